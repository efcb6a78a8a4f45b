from fastapi import APIRouter

from llm_gateway.api.v1.generate import router as generate_router
from llm_gateway.api.v1.providers import router as providers_router
from llm_gateway.api.v1.search import router as search_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(generate_router)
api_v1_router.include_router(providers_router)
api_v1_router.include_router(search_router)
