# storefront/models/types.py
from sqlalchemy import Enum


def enum_column(enum_cls) -> Enum:
    """Stores the enum *value* as a plain VARCHAR so SQLite and Postgres behave the same."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
