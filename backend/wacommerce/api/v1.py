# wacommerce/api/v1.py
from fastapi import APIRouter
from wacommerce.api.endpoints import bot, events, status

api_v1_router = APIRouter()

api_v1_router.include_router(status.router, prefix="/status")
api_v1_router.include_router(events.router)
api_v1_router.include_router(bot.router, prefix="/bot")
