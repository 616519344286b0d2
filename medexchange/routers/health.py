from fastapi import APIRouter

from medexchange import settings

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "MedExchange Messaging Server is Running",
        "features": ["conversations", "realtime", "unread_ledger", "drafts"],
        "endpoints": {
            "open_conversation": "/api/messaging/conversations/{counterparty_id}/open",
            "send": "/api/messaging/conversation/messages",
            "ledger": "/api/messaging/ledger",
            "ledger_ws": "/api/messaging/ws/ledger",
            "status": "/api/messaging/status",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "medexchange-messaging",
        "port": settings.PORT,
    }
