"""TLS certificate issuance and renewal."""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from cryptography import x509

from ..context import ProvisionContext
from ..environment import is_ip_or_localhost
from ..shell import CommandError
from ..templating import render
from .base import STANDARD_ACTIONS, Component, StepResult
from .packages import PackageManager

logger = logging.getLogger("serverpanel.certificates")

RENEW_BEFORE_DAYS = 30
SELF_SIGNED_DAYS = 365
CRON_FILE_NAME = "server-panel-ssl"


@dataclass(frozen=True)
class CertificatePaths:
    """Location of a certificate chain and its private key."""

    certificate: Path
    private_key: Path
    self_signed: bool


def certificate_expiry(path: Path) -> Optional[datetime]:
    """Return the ``notAfter`` time of a PEM certificate, or ``None`` when unreadable."""

    try:
        data = path.read_bytes()
    except OSError:
        return None
    try:
        certificate = x509.load_pem_x509_certificate(data)
    except ValueError:
        logger.warning("Unable to parse certificate at %s", path)
        return None
    return certificate.not_valid_after_utc


def days_remaining(path: Path, *, now: Optional[datetime] = None) -> Optional[int]:
    expiry = certificate_expiry(path)
    if expiry is None:
        return None
    current = now or datetime.now(timezone.utc)
    return (expiry - current).days


def generate_self_signed_certificate(
    runner,
    cert_path: Path,
    key_path: Path,
    *,
    common_name: str,
    days: int = SELF_SIGNED_DAYS,
) -> None:
    """Generate a self-signed TLS certificate using OpenSSL."""

    if runner.which("openssl") is None:
        raise RuntimeError("OpenSSL is required to generate self-signed TLS certificates.")
    if runner.dry_run:
        logger.info("Would generate a self-signed certificate for %s", common_name)
        return

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    with contextlib.suppress(FileNotFoundError):
        cert_path.unlink()
    with contextlib.suppress(FileNotFoundError):
        key_path.unlink()

    runner.run(
        [
            "openssl",
            "req",
            "-x509",
            "-nodes",
            "-newkey",
            "rsa:2048",
            "-keyout",
            str(key_path),
            "-out",
            str(cert_path),
            "-days",
            str(days),
            "-subj",
            f"/CN={common_name}",
        ]
    )
    try:
        key_path.chmod(0o600)
    except OSError:
        pass


class CertificateManager(Component):
    name = "ssl"
    actions = STANDARD_ACTIONS + ("issue", "renew", "remove", "list")

    def live_paths(self, ctx: ProvisionContext, domain: str) -> CertificatePaths:
        live = ctx.settings.letsencrypt_dir / "live" / domain
        return CertificatePaths(live / "fullchain.pem", live / "privkey.pem", self_signed=False)

    def self_signed_paths(self, ctx: ProvisionContext, domain: str) -> CertificatePaths:
        directory = ctx.settings.ssl_dir / domain
        return CertificatePaths(directory / "cert.pem", directory / "key.pem", self_signed=True)

    def _is_fresh(self, path: Path) -> bool:
        remaining = days_remaining(path)
        return remaining is not None and remaining > RENEW_BEFORE_DAYS

    def _certbot_available(self, ctx: ProvisionContext) -> bool:
        return ctx.runner.which("certbot") is not None

    def install(self, ctx: ProvisionContext) -> StepResult:
        environment = ctx.require_environment()
        changed = False
        if not self._certbot_available(ctx):
            installed = PackageManager.for_context(ctx).install(["certbot"], journal=ctx.journal)
            changed = bool(installed)

        ctx.files.ensure_directory(ctx.settings.webroot / ".well-known" / "acme-challenge")
        cron = render(
            "cron/ssl-renew.j2",
            command=" ".join(ctx.cli_command("component", "ssl", "renew")),
            log_dir=str(ctx.settings.log_dir),
        )
        changed |= ctx.files.ensure_file(ctx.settings.cron_dir / CRON_FILE_NAME, cron, mode=0o644)

        issued = self.issue(ctx, environment.domain, environment.email)
        changed |= issued.changed
        return self.result("install", changed, issued.message, **dict(issued.details))

    def obtain(self, ctx: ProvisionContext, domain: str, email: str) -> CertificatePaths:
        """Return certificate paths for ``domain``, issuing only when needed."""

        domain = domain.strip().lower()
        if is_ip_or_localhost(domain):
            paths = self.self_signed_paths(ctx, domain)
            if paths.certificate.exists() and self._is_fresh(paths.certificate):
                return paths
            logger.info("%s is an IP address or localhost; generating a self-signed certificate", domain)
            generate_self_signed_certificate(
                ctx.runner, paths.certificate, paths.private_key, common_name=domain
            )
            ctx.journal.record(
                f"Generated self-signed certificate for {domain}",
                undo={"kind": "remove_path", "path": str(paths.certificate.parent)},
            )
            return paths

        paths = self.live_paths(ctx, domain)
        if paths.certificate.exists() and self._is_fresh(paths.certificate):
            logger.info("Certificate for %s is still valid; skipping issuance", domain)
            return paths

        if not self._certbot_available(ctx):
            raise RuntimeError("certbot is not installed; run `main.py component ssl install` first")

        ctx.runner.run(
            [
                "certbot",
                "certonly",
                "--webroot",
                "--webroot-path",
                str(ctx.settings.webroot),
                "--email",
                email,
                "--agree-tos",
                "--non-interactive",
                "--keep-until-expiring",
                "--domains",
                domain,
            ],
            timeout=300,
        )
        ctx.journal.record(
            f"Issued certificate for {domain}",
            undo={"kind": "command", "args": ["certbot", "delete", "--non-interactive", "--cert-name", domain]},
        )
        return paths

    def issue(self, ctx: ProvisionContext, domain: str, email: Optional[str] = None, *, user_id: Optional[int] = None) -> StepResult:
        environment = ctx.environment
        contact = email or (environment.email if environment else f"admin@{domain}")
        before = self.self_signed_paths(ctx, domain) if is_ip_or_localhost(domain) else self.live_paths(ctx, domain)
        fresh_before = before.certificate.exists() and self._is_fresh(before.certificate)

        paths = self.obtain(ctx, domain, contact)
        if not ctx.settings.dry_run:
            ctx.database.upsert_domain(
                domain,
                user_id=user_id,
                ssl_enabled=True,
                ssl_cert_path=str(paths.certificate),
                ssl_key_path=str(paths.private_key),
            )
        changed = not fresh_before
        if changed and not paths.self_signed:
            webserver = ctx.webserver()
            if webserver is not None:
                webserver.reload(ctx)

        kind = "self-signed" if paths.self_signed else "ACME"
        message = f"{kind} certificate for {domain} at {paths.certificate}"
        return self.result(
            "issue",
            changed,
            message,
            certificate=str(paths.certificate),
            private_key=str(paths.private_key),
            self_signed=paths.self_signed,
        )

    def renew(self, ctx: ProvisionContext) -> StepResult:
        """Renew certificates close to expiry; others are left untouched."""

        outcomes: Dict[str, str] = {}
        for record in ctx.database.list_domains(ssl_only=True):
            if not record.ssl_cert_path:
                continue
            cert_path = Path(record.ssl_cert_path)
            if cert_path.exists() and self._is_fresh(cert_path):
                outcomes[record.domain] = "skipped"
                continue

            try:
                if is_ip_or_localhost(record.domain):
                    self.obtain(ctx, record.domain, f"admin@{record.domain}")
                else:
                    ctx.runner.run(
                        [
                            "certbot",
                            "renew",
                            "--cert-name",
                            record.domain,
                            "--quiet",
                            "--no-self-upgrade",
                        ],
                        timeout=300,
                    )
            except (CommandError, RuntimeError) as exc:
                logger.error("Renewal failed for %s: %s", record.domain, exc)
                outcomes[record.domain] = "failed"
                continue
            outcomes[record.domain] = "renewed"

        renewed = [domain for domain, outcome in outcomes.items() if outcome == "renewed"]
        if renewed:
            webserver = ctx.webserver()
            if webserver is not None:
                webserver.reload(ctx)

        summary = ", ".join(f"{domain}: {outcome}" for domain, outcome in outcomes.items()) or "no certificates"
        return self.result("renew", bool(renewed), summary, outcomes=outcomes)

    def list(self, ctx: ProvisionContext) -> StepResult:
        entries: Dict[str, Optional[int]] = {}
        for record in ctx.database.list_domains(ssl_only=True):
            entries[record.domain] = days_remaining(Path(record.ssl_cert_path)) if record.ssl_cert_path else None
        lines = []
        for domain, remaining in entries.items():
            if remaining is None:
                lines.append(f"{domain}: missing")
            elif remaining <= RENEW_BEFORE_DAYS:
                lines.append(f"{domain}: expires in {remaining} days (renewal due)")
            else:
                lines.append(f"{domain}: {remaining} days left")
        return self.result("list", False, "\n".join(lines) or "no certificates", days_remaining=entries)

    def status(self, ctx: ProvisionContext) -> StepResult:
        listed = self.list(ctx)
        return self.result("status", False, listed.message, **dict(listed.details))

    def remove(self, ctx: ProvisionContext, domain: str) -> StepResult:
        domain = domain.strip().lower()
        if is_ip_or_localhost(domain):
            paths = self.self_signed_paths(ctx, domain)
            ctx.files.remove(paths.certificate)
            ctx.files.remove(paths.private_key)
        elif self._certbot_available(ctx):
            ctx.runner.run(["certbot", "delete", "--non-interactive", "--cert-name", domain], check=False)
        removed = ctx.database.delete_domain(domain)
        return self.result("remove", removed, f"Removed certificate for {domain}" if removed else f"No certificate for {domain}")


__all__ = [
    "CertificateManager",
    "CertificatePaths",
    "RENEW_BEFORE_DAYS",
    "certificate_expiry",
    "days_remaining",
    "generate_self_signed_certificate",
]
