"""Application runtimes and the per-application deployment pipeline."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from ..context import ProvisionContext
from ..database import generate_password
from ..docker import ContainerSpec, env_pairs
from ..environment import is_ip_or_localhost
from ..models import Application, User
from ..templating import list_templates, render
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.apps")

_APP_NAME = re.compile(r"^[a-z0-9][a-z0-9-]{0,38}$")
# No dashes: "<app>-<user>" must stay unambiguous.
_USER_NAME = re.compile(r"^[a-z0-9][a-z0-9_]{0,31}$")
_DOMAIN = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


@dataclass(frozen=True)
class AppTemplate:
    """How one application type is run."""

    app_type: str
    image: str
    versions: Tuple[str, ...]
    variants: Tuple[str, ...]
    default_version: str
    container_port: int = 80
    mount: str = "/var/www/html"
    command: Tuple[str, ...] = ()
    variant_ports: Tuple[Tuple[str, int], ...] = ()
    scaffold: bool = True

    def image_for(self, version: str) -> str:
        return self.image.format(version=version)

    def port_for(self, variant: str) -> int:
        return dict(self.variant_ports).get(variant, self.container_port)


TEMPLATES: Dict[str, AppTemplate] = {
    "wordpress": AppTemplate(
        app_type="wordpress",
        image="wordpress:{version}",
        versions=("latest", "6.4", "6.5", "6.6"),
        variants=("default",),
        default_version="latest",
        scaffold=False,
    ),
    "php": AppTemplate(
        app_type="php",
        image="php:{version}-apache",
        versions=("7.4", "8.0", "8.1", "8.2", "8.3"),
        variants=("basic", "laravel", "symfony", "codeigniter"),
        default_version="8.2",
    ),
    "nodejs": AppTemplate(
        app_type="nodejs",
        image="node:{version}-alpine",
        versions=("16", "18", "20", "21"),
        variants=("express", "nextjs", "nestjs", "react"),
        default_version="18",
        container_port=3000,
        mount="/app",
        command=("sh", "-c", "npm install --no-audit --no-fund && npm start"),
    ),
    "python": AppTemplate(
        app_type="python",
        image="python:{version}-slim",
        versions=("3.8", "3.9", "3.10", "3.11", "3.12"),
        variants=("flask", "django", "fastapi"),
        default_version="3.11",
        container_port=5000,
        mount="/app",
        command=("sh", "-c", "pip install --no-cache-dir -r requirements.txt && python app.py"),
        variant_ports=(("django", 8000), ("fastapi", 8000)),
    ),
    "static": AppTemplate(
        app_type="static",
        image="nginx:alpine",
        versions=("latest",),
        variants=("default",),
        default_version="latest",
        mount="/usr/share/nginx/html",
    ),
}


@dataclass(frozen=True)
class DeploymentResult(StepResult):
    """Outcome of a deployment; unpacks as ``(container_name, port, vhost_path)``."""

    container_name: str = ""
    port: int = 0
    vhost_path: str = ""
    app_dir: str = ""
    certificate: Optional[str] = None

    def __iter__(self) -> Iterator[object]:
        return iter((self.container_name, self.port, self.vhost_path))


def validate_app_name(name: str) -> str:
    normalized = name.strip().lower()
    if not _APP_NAME.match(normalized):
        raise ValueError(
            f"Invalid application name '{name}': use lowercase letters, digits and dashes"
        )
    return normalized


def validate_domain(domain: str) -> str:
    normalized = domain.strip().lower().rstrip(".")
    if is_ip_or_localhost(normalized) or _DOMAIN.match(normalized):
        return normalized
    raise ValueError(f"Invalid domain '{domain}'")


def container_name(name: str, user: str) -> str:
    return f"{name}-{user}"


def _database_identifier(name: str, user: str) -> str:
    return re.sub(r"[^a-z0-9_]", "_", f"wp_{name}_{user}")[:32]


class ApplicationRuntime(Component):
    """Runtime images and deployments for one application type."""

    actions = STANDARD_ACTIONS + ("deploy", "remove")

    def __init__(self, app_type: str) -> None:
        self.name = app_type
        self.template = TEMPLATES[app_type]

    # ------------------------------------------------------------------
    # Component contract
    # ------------------------------------------------------------------
    def install(self, ctx: ProvisionContext) -> StepResult:
        image = self.template.image_for(self.template.default_version)
        changed = ctx.docker.ensure_image(image)
        message = f"Pulled {image}" if changed else f"{image} already present"
        return self.result("install", changed, message, image=image)

    def status(self, ctx: ProvisionContext, name: str = "", user: str = "admin") -> StepResult:
        if not name:
            apps = [app for app in ctx.database.list_applications() if app.type == self.name]
            summary = ", ".join(f"{app.name}: {app.status}" for app in apps) or "no applications"
            return self.result("status", False, summary, applications=[app.to_dict() for app in apps])

        owner, application = self._lookup(ctx, name, user)
        state = ctx.docker.container_state(container_name(application.name, owner.username)) or "missing"
        return self.result("status", False, f"{application.name}: {state}", state=state, port=application.port)

    def start(self, ctx: ProvisionContext, name: str = "", user: str = "admin") -> StepResult:
        if not name:
            return super().start(ctx)
        owner, application = self._lookup(ctx, name, user)
        ctx.docker.start(container_name(application.name, owner.username))
        ctx.database.update_application(application.id, status="running")
        return self.result("start", True, f"Started {application.name}")

    def stop(self, ctx: ProvisionContext, name: str = "", user: str = "admin") -> StepResult:
        if not name:
            return super().stop(ctx)
        owner, application = self._lookup(ctx, name, user)
        ctx.docker.stop(container_name(application.name, owner.username))
        ctx.database.update_application(application.id, status="stopped")
        return self.result("stop", True, f"Stopped {application.name}")

    def restart(self, ctx: ProvisionContext, name: str = "", user: str = "admin") -> StepResult:
        if not name:
            return self.result("restart", False, f"{self.name} has no long-running service")
        self.stop(ctx, name, user)
        started = self.start(ctx, name, user)
        return self.result("restart", True, started.message)

    def remove(self, ctx: ProvisionContext, name: str, user: str = "admin") -> StepResult:
        """Remove the container, virtual host and record; application files are kept."""

        owner, application = self._lookup(ctx, name, user)
        container = container_name(application.name, owner.username)
        ctx.docker.remove_container(container)
        webserver = ctx.webserver()
        if webserver is not None:
            webserver.remove_proxy(ctx, container)
        ctx.database.delete_application(application.id)
        app_dir = ctx.app_dir(owner.username, application.name)
        return self.result("remove", True, f"Removed {application.name}; files kept in {app_dir}")

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------
    def deploy(
        self,
        ctx: ProvisionContext,
        name: str,
        domain: str,
        variant: str = "",
        version: str = "",
        user: str = "admin",
        *,
        tls: bool = True,
    ) -> DeploymentResult:
        """Deploy (or redeploy) ``name`` for ``user`` and route ``domain`` to it."""

        template = self.template
        name = validate_app_name(name)
        domain = validate_domain(domain)
        variant = variant or template.variants[0]
        version = version or template.default_version
        if variant not in template.variants:
            raise ValueError(
                f"Unsupported {self.name} variant '{variant}'. Choose from: {', '.join(template.variants)}"
            )
        if version not in template.versions:
            raise ValueError(
                f"Unsupported {self.name} version '{version}'. Choose from: {', '.join(template.versions)}"
            )

        owner = self._resolve_owner(ctx, user)
        self._check_conflicts(ctx, name, owner, domain)
        port = ctx.ports.allocate(self.name, user_id=owner.id, name=name)
        config: Dict[str, object] = {"variant": variant, "version": version}
        existing = ctx.database.find_application(owner.id, name)
        if existing is None:
            application = ctx.database.create_application(
                owner.id, name, self.name, domain=domain, port=port, config=config
            )
        else:
            config = {**existing.config, **config}
            application = ctx.database.update_application(
                existing.id, domain=domain, port=port, status="creating", config=config
            )

        try:
            result = self._deploy(ctx, application, owner, domain, variant, version, port, tls=tls)
        except Exception:
            logger.exception("Deployment of %s failed", name)
            ctx.database.update_application(application.id, status="error")
            raise

        ctx.database.update_application(application.id, status="running")
        return result

    def _deploy(
        self,
        ctx: ProvisionContext,
        application: Application,
        owner: User,
        domain: str,
        variant: str,
        version: str,
        port: int,
        *,
        tls: bool,
    ) -> DeploymentResult:
        template = self.template
        container = container_name(application.name, owner.username)
        app_dir = ctx.app_dir(owner.username, application.name)
        container_port = template.port_for(variant)

        ctx.files.ensure_directory(app_dir)
        if template.scaffold:
            self._scaffold(ctx, app_dir, application.name, domain, variant, version, container_port)

        env: Dict[str, str] = {"PORT": str(container_port)}
        if self.name == "wordpress":
            env.update(self._wordpress_database(ctx, application, owner))

        image = template.image_for(version)
        ctx.docker.ensure_image(image)
        spec = ContainerSpec(
            name=container,
            image=image,
            network=ctx.settings.network,
            ports=(f"127.0.0.1:{port}:{container_port}",),
            volumes=(f"{app_dir}:{template.mount}",),
            env=env_pairs(env),
            labels=(
                ("server-panel.app", application.name),
                ("server-panel.user", owner.username),
                ("server-panel.type", self.name),
                ("server-panel.domain", domain),
            ),
            command=template.command,
            workdir=template.mount if template.command else None,
        )
        ctx.docker.ensure_container(spec)
        ctx.docker.wait_until_running(container)

        webserver = ctx.webserver()
        if webserver is None:
            raise RuntimeError("No web server is enabled; cannot route the application")
        proxy = webserver.add_proxy(ctx, container, domain, port)
        vhost_path = str(proxy.details["vhost"])

        certificate: Optional[str] = None
        if tls and ctx.is_enabled("ssl") and not is_ip_or_localhost(domain):
            manager = ctx.component("ssl")
            email = ctx.environment.email if ctx.environment else owner.email
            issued = manager.obtain(ctx, domain, email)  # type: ignore[attr-defined]
            ctx.database.upsert_domain(
                domain,
                user_id=owner.id,
                ssl_enabled=True,
                ssl_cert_path=str(issued.certificate),
                ssl_key_path=str(issued.private_key),
            )
            webserver.add_proxy(ctx, container, domain, port, issued.certificate, issued.private_key)
            certificate = str(issued.certificate)
        else:
            ctx.database.upsert_domain(domain, user_id=owner.id, ssl_enabled=False)

        message = f"Deployed {application.name} at https://{domain} (container {container}, port {port})"
        return DeploymentResult(
            component=self.name,
            action="deploy",
            changed=True,
            message=message,
            details={"domain": domain, "variant": variant, "version": version},
            container_name=container,
            port=port,
            vhost_path=vhost_path,
            app_dir=str(app_dir),
            certificate=certificate,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lookup(self, ctx: ProvisionContext, name: str, user: str) -> Tuple[User, Application]:
        owner = ctx.database.get_user_by_username(user)
        if owner is None:
            raise ValueError(f"Unknown user '{user}'")
        application = ctx.database.find_application(owner.id, validate_app_name(name))
        if application is None or application.type != self.name:
            raise ValueError(f"No {self.name} application '{name}' for user '{user}'")
        return owner, application

    def _check_conflicts(self, ctx: ProvisionContext, name: str, owner: User, domain: str) -> None:
        """Refuse a deployment that would take over another deployment's container or domain."""

        existing = ctx.database.find_application(owner.id, name)
        if existing is not None and existing.type != self.name:
            raise ValueError(f"User '{owner.username}' already has a {existing.type} application '{name}'")

        container = container_name(name, owner.username)
        docker = ctx.docker
        if docker.container_state(container) is not None:
            claimed = (
                docker.container_label(container, "server-panel.app"),
                docker.container_label(container, "server-panel.user"),
            )
            if claimed != (name, owner.username):
                raise ValueError(f"Container {container} already exists and belongs to another deployment")

        record = ctx.database.get_domain(domain)
        if record is not None and record.user_id is not None and record.user_id != owner.id:
            raise ValueError(f"Domain '{domain}' belongs to another user")
        for application in ctx.database.list_applications():
            if application.domain != domain:
                continue
            if application.user_id != owner.id or application.name != name:
                raise ValueError(f"Domain '{domain}' is already routed to application '{application.name}'")

    def _resolve_owner(self, ctx: ProvisionContext, username: str) -> User:
        normalized = username.strip().lower()
        if not _USER_NAME.match(normalized):
            raise ValueError(
                f"Invalid user name '{username}': use lowercase letters, digits and underscores"
            )
        owner = ctx.database.get_user_by_username(normalized)
        if owner is not None:
            return owner
        host = ctx.environment.hostname if ctx.environment else "localhost"
        logger.info("Creating panel user %s for the deployment", normalized)
        return ctx.database.create_user(normalized, f"{normalized}@{host}", generate_password())

    def _scaffold(
        self,
        ctx: ProvisionContext,
        app_dir: Path,
        name: str,
        domain: str,
        variant: str,
        version: str,
        container_port: int,
    ) -> None:
        """Render the shared files of the type and those of ``variant`` into ``app_dir``."""

        for prefix in (f"apps/{self.name}/common/", f"apps/{self.name}/{variant}/"):
            for template_name in list_templates(prefix):
                target = app_dir / template_name[len(prefix):].removesuffix(".j2")
                if target.exists():
                    continue
                content = render(
                    template_name,
                    app_name=name,
                    domain=domain,
                    variant=variant,
                    version=version,
                    container_port=container_port,
                    secret_key=generate_password(48),
                )
                ctx.files.ensure_file(target, content, mode=0o644)

    def _wordpress_database(self, ctx: ProvisionContext, application: Application, owner: User) -> Dict[str, str]:
        if not ctx.is_enabled("mysql"):
            raise RuntimeError("WordPress deployments require the mysql component")

        identifier = _database_identifier(application.name, owner.username)
        password = str(application.config.get("db_password") or generate_password())
        ctx.component("mysql").create_database(ctx, identifier, identifier, password)  # type: ignore[attr-defined]
        if application.config.get("db_password") != password:
            ctx.database.update_application(
                application.id, config={**application.config, "db_password": password}
            )
        return {
            "WORDPRESS_DB_HOST": "server-panel-mysql:3306",
            "WORDPRESS_DB_NAME": identifier,
            "WORDPRESS_DB_USER": identifier,
            "WORDPRESS_DB_PASSWORD": password,
        }


__all__ = [
    "AppTemplate",
    "ApplicationRuntime",
    "DeploymentResult",
    "TEMPLATES",
    "container_name",
    "validate_app_name",
    "validate_domain",
]
