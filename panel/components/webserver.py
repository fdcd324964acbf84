"""NGINX and Apache installation plus per-application reverse-proxy hosts."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from ..context import ProvisionContext
from ..shell import CommandError
from ..templating import render
from .base import STANDARD_ACTIONS, ServiceComponent, StepResult
from .certificates import generate_self_signed_certificate
from .packages import PackageManager

logger = logging.getLogger("serverpanel.webserver")

DEFAULT_SITE = "server-panel"
_SITE_NAME = re.compile(r"^[a-z0-9][a-z0-9._-]{0,62}$")


class WebServerConfigError(RuntimeError):
    """Raised when the web server rejects the generated configuration."""


def _validate_site(name: str) -> str:
    normalized = name.strip().lower()
    if not _SITE_NAME.match(normalized):
        raise ValueError(f"Invalid site name '{name}'")
    return normalized


def upstream_name(site: str) -> str:
    return f"{_validate_site(site)}_backend"


class WebServer(ServiceComponent):
    """Common behaviour for the supported web servers."""

    actions = STANDARD_ACTIONS + ("reload", "add-proxy", "remove-proxy")
    template_dir = ""

    def packages(self, ctx: ProvisionContext) -> List[str]:
        raise NotImplementedError

    def config_root(self, ctx: ProvisionContext) -> Path:
        raise NotImplementedError

    def test_command(self, ctx: ProvisionContext) -> List[str]:
        raise NotImplementedError

    def binary(self, ctx: ProvisionContext) -> str:
        return self.test_command(ctx)[0]

    def sites_available(self, ctx: ProvisionContext) -> Path:
        return self.config_root(ctx) / "sites-available"

    def sites_enabled(self, ctx: ProvisionContext) -> Optional[Path]:
        return self.config_root(ctx) / "sites-enabled"

    def default_certificate(self, ctx: ProvisionContext) -> Tuple[Path, Path]:
        ssl_dir = self.config_root(ctx) / "ssl"
        return ssl_dir / "default.crt", ssl_dir / "default.key"

    def vhost_path(self, ctx: ProvisionContext, site: str) -> Path:
        return self.sites_available(ctx) / f"{site}.conf"

    def _prepare_layout(self, ctx: ProvisionContext) -> bool:
        return False

    def _enable(self, ctx: ProvisionContext, site: str) -> bool:
        enabled_dir = self.sites_enabled(ctx)
        if enabled_dir is None:
            return False
        return ctx.files.ensure_symlink(enabled_dir / f"{site}.conf", self.vhost_path(ctx, site))

    def _disable(self, ctx: ProvisionContext, site: str) -> bool:
        enabled_dir = self.sites_enabled(ctx)
        if enabled_dir is None:
            return False
        return ctx.files.remove(enabled_dir / f"{site}.conf")

    def install(self, ctx: ProvisionContext) -> StepResult:
        changed = False
        if ctx.runner.which(self.binary(ctx)) is None:
            installed = PackageManager.for_context(ctx).install(self.packages(ctx), journal=ctx.journal)
            changed = bool(installed)
        else:
            logger.info("%s already installed; skipping package installation", self.name)

        cert_path, key_path = self.default_certificate(ctx)
        if not cert_path.exists() or not key_path.exists():
            generate_self_signed_certificate(ctx.runner, cert_path, key_path, common_name="localhost")
            ctx.journal.record(
                f"Generated default certificate {cert_path}",
                undo={"kind": "remove_path", "path": str(cert_path.parent)},
            )
            changed = True

        changed |= ctx.files.ensure_directory(ctx.settings.webroot)
        changed |= self._prepare_layout(ctx)

        content = render(
            f"{self.template_dir}/default.conf.j2",
            webroot=str(ctx.settings.webroot),
            certificate=str(cert_path),
            private_key=str(key_path),
            api_port=ctx.settings.api_port,
            dashboard_port=ctx.settings.dashboard_port,
            server_name=ctx.environment.domain if ctx.environment else "localhost",
        )
        site_changed = ctx.files.ensure_file(self.vhost_path(ctx, DEFAULT_SITE), content)
        site_changed |= self._enable(ctx, DEFAULT_SITE)
        changed |= site_changed

        ctx.systemctl("enable", "--now", self.service_name(ctx))
        if site_changed:
            self.reload(ctx)

        message = f"{self.name} configured" if changed else f"{self.name} already configured"
        return self.result("install", changed, message, default_site=str(self.vhost_path(ctx, DEFAULT_SITE)))

    def reload(self, ctx: ProvisionContext) -> StepResult:
        if ctx.settings.dry_run:
            return self.result("reload", False, "dry run")
        if ctx.runner.which(self.binary(ctx)) is None:
            logger.info("%s binary not found; skipping reload", self.name)
            return self.result("reload", False, "not installed")
        try:
            ctx.runner.run(self.test_command(ctx))
        except CommandError as exc:
            raise WebServerConfigError(f"{self.name} configuration test failed: {exc}") from exc
        service = self.service_name(ctx)
        ctx.systemctl("reload", service)
        return self.result("reload", True, f"Reloaded {service}")

    def add_proxy(
        self,
        ctx: ProvisionContext,
        site: str,
        domain: str,
        port: str | int,
        certificate: str | Path | None = None,
        private_key: str | Path | None = None,
    ) -> StepResult:
        """Route ``domain`` to ``127.0.0.1:port`` through a dedicated virtual host."""

        site = _validate_site(site)
        try:
            port_number = int(port)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid port '{port}'") from exc
        if not 1 <= port_number <= 65535:
            raise ValueError(f"Invalid port '{port}'")

        default_cert, default_key = self.default_certificate(ctx)
        content = render(
            f"{self.template_dir}/proxy.conf.j2",
            site=site,
            upstream=upstream_name(site),
            domain=domain.strip().lower(),
            port=port_number,
            webroot=str(ctx.settings.webroot),
            certificate=str(certificate or default_cert),
            private_key=str(private_key or default_key),
        )
        path = self.vhost_path(ctx, site)
        changed = ctx.files.ensure_file(path, content)
        changed |= self._enable(ctx, site)
        if changed:
            self.reload(ctx)
        message = f"Proxy {domain} -> 127.0.0.1:{port_number} ({path})"
        return self.result("add-proxy", changed, message, vhost=str(path), domain=domain, port=port_number)

    def remove_proxy(self, ctx: ProvisionContext, site: str) -> StepResult:
        site = _validate_site(site)
        if site == DEFAULT_SITE:
            raise ValueError("The default panel site cannot be removed")
        changed = self._disable(ctx, site)
        changed |= ctx.files.remove(self.vhost_path(ctx, site))
        if changed:
            self.reload(ctx)
        return self.result("remove-proxy", changed, f"Removed proxy for {site}" if changed else f"No proxy for {site}")


class NginxServer(WebServer):
    name = "nginx"
    service = "nginx"
    template_dir = "nginx"

    def packages(self, ctx: ProvisionContext) -> List[str]:
        return ["nginx"]

    def config_root(self, ctx: ProvisionContext) -> Path:
        return ctx.settings.nginx_dir

    def test_command(self, ctx: ProvisionContext) -> List[str]:
        return ["nginx", "-t"]

    def _prepare_layout(self, ctx: ProvisionContext) -> bool:
        changed = ctx.files.ensure_directory(self.sites_available(ctx))
        changed |= ctx.files.ensure_directory(self.sites_enabled(ctx))  # type: ignore[arg-type]
        # The distribution's catch-all site would shadow the panel's default server.
        changed |= ctx.files.remove(self.sites_enabled(ctx) / "default")  # type: ignore[operator]
        environment = ctx.require_environment()
        if environment.os_family != "debian":
            include = f"include {self.sites_enabled(ctx)}/*.conf;\n"
            changed |= ctx.files.ensure_file(self.config_root(ctx) / "conf.d" / "server-panel-sites.conf", include)
        return changed


class ApacheServer(WebServer):
    name = "apache"
    template_dir = "apache"

    def _debian(self, ctx: ProvisionContext) -> bool:
        return ctx.require_environment().os_family == "debian"

    def service_name(self, ctx: ProvisionContext) -> str:
        return "apache2" if self._debian(ctx) else "httpd"

    def packages(self, ctx: ProvisionContext) -> List[str]:
        if self._debian(ctx):
            return ["apache2"]
        return ["httpd", "mod_ssl"]

    def config_root(self, ctx: ProvisionContext) -> Path:
        if self._debian(ctx) or ctx.settings.apache_dir != Path("/etc/apache2"):
            return ctx.settings.apache_dir
        return Path("/etc/httpd")

    def sites_available(self, ctx: ProvisionContext) -> Path:
        if self._debian(ctx):
            return self.config_root(ctx) / "sites-available"
        return self.config_root(ctx) / "conf.d"

    def sites_enabled(self, ctx: ProvisionContext) -> Optional[Path]:
        if self._debian(ctx):
            return self.config_root(ctx) / "sites-enabled"
        return None

    def test_command(self, ctx: ProvisionContext) -> List[str]:
        return ["apachectl", "configtest"]

    def _prepare_layout(self, ctx: ProvisionContext) -> bool:
        changed = ctx.files.ensure_directory(self.sites_available(ctx))
        enabled = self.sites_enabled(ctx)
        if enabled is not None:
            changed |= ctx.files.ensure_directory(enabled)
            changed |= ctx.files.remove(enabled / "000-default.conf")
            if ctx.runner.which("a2enmod") is not None:
                ctx.runner.run(
                    ["a2enmod", "ssl", "proxy", "proxy_http", "proxy_wstunnel", "rewrite", "headers"],
                    check=False,
                )
        return changed


__all__ = [
    "ApacheServer",
    "DEFAULT_SITE",
    "NginxServer",
    "WebServer",
    "WebServerConfigError",
    "upstream_name",
]
