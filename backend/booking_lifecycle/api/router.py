"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from booking_lifecycle.api.routes import audit, bookings, courses, payments

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(bookings.router)
api_router.include_router(courses.router)
api_router.include_router(audit.router)
api_router.include_router(payments.router)
