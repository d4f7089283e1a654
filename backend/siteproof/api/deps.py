from fastapi import Request

from ..services.offline_sync import OfflineSyncService


def get_sync_service(request: Request) -> OfflineSyncService:
    """The service object built in the app lifespan."""
    return request.app.state.sync_service
