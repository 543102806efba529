# storefront/models/__init__.py
# Importing every model here registers all tables on Base.metadata.
from storefront.models.discount_code import DiscountCode, DiscountCodeSettlement
from storefront.models.influencer import Commission, Influencer, InfluencerPayment
from storefront.models.lead import Lead
from storefront.models.order import Order, OrderItem, Payment
