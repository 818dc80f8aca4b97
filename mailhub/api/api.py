from fastapi import APIRouter

from mailhub.api.endpoints import emails, mailboxes, notifications, realtime, webhooks

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(webhooks.router)
api_router.include_router(emails.router)
api_router.include_router(mailboxes.router)
api_router.include_router(notifications.router)
api_router.include_router(realtime.router)
