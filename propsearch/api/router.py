from fastapi import APIRouter

from propsearch.api.routes import address, bulk_search, exports, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(bulk_search.router, prefix="/bulk-search", tags=["bulk-search"])
api_router.include_router(exports.router, prefix="/bulk-export", tags=["bulk-search"])
api_router.include_router(address.router, prefix="/address", tags=["address"])
