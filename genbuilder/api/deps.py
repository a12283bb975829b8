from fastapi import Request
from genbuilder.core.services import BuilderServices

def get_services(request: Request) -> BuilderServices:
    return request.app.state.services
