# storefront/routers/v1/endpoints/admin/__init__.py

from fastapi import APIRouter, Depends

from storefront.dependencies import verify_admin_api_key

from . import leads, tasks

# Every admin endpoint requires the X-Admin-Api-Key header
router = APIRouter(dependencies=[Depends(verify_admin_api_key)])

router.include_router(tasks.router, prefix="/tasks")
router.include_router(leads.router, prefix="/leads")
