"""HTML dashboard served by the panel frontend container."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

DASHBOARD_TITLE = "Server Panel"


@dataclass(frozen=True)
class ServiceLink:
    name: str
    port: int
    description: str
    scheme: str = "http"

    def url_for(self, host: str) -> str:
        return f"{self.scheme}://{host}:{self.port}/"


SERVICE_LINKS = (
    ServiceLink("API", 3001, "Placeholder REST API and health endpoint"),
    ServiceLink("File Manager", 8080, "Browse and edit application files"),
    ServiceLink("Grafana", 3002, "Dashboards for host and container metrics"),
    ServiceLink("Prometheus", 9090, "Metrics collection and queries"),
    ServiceLink("Alertmanager", 9093, "Active alerts"),
)


def _template_environment() -> Jinja2Templates:
    base_dir = Path(__file__).resolve().parent
    return Jinja2Templates(directory=str(base_dir / "templates" / "panel"))


def _request_host(request: Request) -> str:
    host = request.url.hostname or "localhost"
    if ":" in host:
        return f"[{host}]"
    return host


def register_dashboard_routes(app: FastAPI, *, version: str, api_port: int = 3001) -> None:
    templates = _template_environment()
    links: List[ServiceLink] = [
        ServiceLink(link.name, api_port, link.description) if link.name == "API" else link
        for link in SERVICE_LINKS
    ]

    @app.get("/", response_class=HTMLResponse)
    async def dashboard(request: Request):
        host = _request_host(request)
        context = {
            "title": DASHBOARD_TITLE,
            "version": version,
            "host": host,
            "services": [
                {"name": link.name, "description": link.description, "url": link.url_for(host)}
                for link in links
            ],
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        }
        return templates.TemplateResponse(request, "dashboard.html", context)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


__all__ = ["DASHBOARD_TITLE", "SERVICE_LINKS", "register_dashboard_routes"]
