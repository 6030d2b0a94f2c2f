"""
FastAPI Dependencies

Services are built once by the application lifespan and kept on app.state;
these accessors hand them to endpoints.
"""

from fastapi import Request

from upscaler.modules.imagery.services import StatusQueryService, SubmissionGateway


def get_submission_gateway(request: Request) -> SubmissionGateway:
    return request.app.state.gateway


def get_status_service(request: Request) -> StatusQueryService:
    return request.app.state.status_service
