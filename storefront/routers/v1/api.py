# storefront/routers/v1/api.py

from fastapi import APIRouter

from storefront.routers.v1.endpoints import discount_codes
from storefront.routers.v1.endpoints import admin as admin_v1_router

# Mounted under /api, so everything here lives under /api/v1
api_router = APIRouter(prefix="/v1")

api_router.include_router(discount_codes.router, tags=["Discount codes"])

api_router.include_router(admin_v1_router.router, prefix="/admin", tags=["Admin"])
