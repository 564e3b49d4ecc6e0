from fastapi import APIRouter
from portal.api.v1.lab import routes as lab

api_router = APIRouter()
api_router.include_router(lab.router)
