from fastapi import Request
from optimizer_intelligence.services import PipelineServices, build_services


def get_services(request: Request) -> PipelineServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = request.app.state.services = build_services()
    return services
