"""API routes."""

from fastapi import APIRouter

from etims.api.routes import etims

api_router = APIRouter()

# KRA eTIMS
api_router.include_router(etims.router, prefix="/etims", tags=["etims", "kra", "fiscal"])
