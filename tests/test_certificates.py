from __future__ import annotations

from datetime import datetime, timedelta, timezone

from panel.components.certificates import (
    CRON_FILE_NAME,
    CertificateManager,
    certificate_expiry,
    days_remaining,
)

from conftest import write_certificate


def test_expiry_is_read_from_the_certificate(tmp_path) -> None:
    cert, key = tmp_path / "cert.pem", tmp_path / "key.pem"
    write_certificate(cert, key, days=10)

    expiry = certificate_expiry(cert)
    assert expiry is not None
    assert timedelta(days=9) < expiry - datetime.now(timezone.utc) <= timedelta(days=10)
    assert days_remaining(cert) == 9

    (tmp_path / "garbage.pem").write_text("not a certificate")
    assert certificate_expiry(tmp_path / "garbage.pem") is None
    assert certificate_expiry(tmp_path / "missing.pem") is None


def test_ip_address_gets_a_self_signed_certificate_without_certbot(make_context, runner, settings, database) -> None:
    ctx = make_context()
    manager = CertificateManager()

    result = manager.issue(ctx, "203.0.113.10")

    assert result.details["self_signed"] is True
    assert runner.matching("certbot") == []
    assert (settings.ssl_dir / "203.0.113.10" / "cert.pem").exists()
    record = database.get_domain("203.0.113.10")
    assert record is not None and record.ssl_enabled

    again = manager.issue(ctx, "203.0.113.10")
    assert again.changed is False
    assert len(runner.matching("openssl")) == 1


def test_domain_is_issued_through_certbot_webroot(make_context, runner, settings) -> None:
    ctx = make_context()
    live = settings.letsencrypt_dir / "live" / "shop.example.com"
    original = runner._dispatch

    def certbot_writes_certificate(command):
        if command[0] == "certbot" and command[1] == "certonly":
            write_certificate(live / "fullchain.pem", live / "privkey.pem", days=90)
        return original(command)

    runner._dispatch = certbot_writes_certificate
    manager = CertificateManager()

    paths = manager.obtain(ctx, "Shop.Example.com", "ops@example.com")

    assert paths.certificate == live / "fullchain.pem"
    certonly = runner.matching("certbot", "certonly")
    assert len(certonly) == 1
    assert "--webroot" in certonly[0]
    assert certonly[0][certonly[0].index("--domains") + 1] == "shop.example.com"
    assert certonly[0][certonly[0].index("--email") + 1] == "ops@example.com"

    manager.obtain(ctx, "shop.example.com", "ops@example.com")
    assert len(runner.matching("certbot", "certonly")) == 1


def test_renew_skips_fresh_and_renews_expiring_certificates(make_context, runner, settings, database) -> None:
    ctx = make_context()
    fresh = settings.letsencrypt_dir / "live" / "fresh.example.com"
    stale = settings.letsencrypt_dir / "live" / "stale.example.com"
    write_certificate(fresh / "fullchain.pem", fresh / "privkey.pem", days=80)
    write_certificate(stale / "fullchain.pem", stale / "privkey.pem", days=5)
    for domain, directory in (("fresh.example.com", fresh), ("stale.example.com", stale)):
        database.upsert_domain(
            domain,
            user_id=None,
            ssl_enabled=True,
            ssl_cert_path=str(directory / "fullchain.pem"),
            ssl_key_path=str(directory / "privkey.pem"),
        )

    result = CertificateManager().run_action(ctx, "renew")

    assert result.details["outcomes"] == {"fresh.example.com": "skipped", "stale.example.com": "renewed"}
    renewals = runner.matching("certbot", "renew")
    assert len(renewals) == 1
    assert "stale.example.com" in renewals[0]
    assert runner.matching("systemctl", "reload", "nginx")


def test_failed_renewal_is_reported_not_raised(make_context, runner, settings, database) -> None:
    ctx = make_context()
    stale = settings.letsencrypt_dir / "live" / "stale.example.com"
    write_certificate(stale / "fullchain.pem", stale / "privkey.pem", days=2)
    database.upsert_domain("stale.example.com", user_id=None, ssl_enabled=True, ssl_cert_path=str(stale / "fullchain.pem"))
    runner.fail("certbot", "renew")

    result = CertificateManager().renew(ctx)

    assert result.details["outcomes"] == {"stale.example.com": "failed"}
    assert result.changed is False


def test_install_schedules_renewal_and_covers_the_panel_domain(make_context, runner, settings, environment) -> None:
    from dataclasses import replace

    ctx = make_context(environment=replace(environment, domain="203.0.113.10"))

    result = CertificateManager().install(ctx)

    cron = (settings.cron_dir / CRON_FILE_NAME).read_text()
    assert "component ssl renew" in cron
    assert result.details["self_signed"] is True
    assert (settings.webroot / ".well-known" / "acme-challenge").is_dir()


def test_list_reports_days_left(make_context, settings, database) -> None:
    ctx = make_context()
    live = settings.letsencrypt_dir / "live" / "a.example.com"
    write_certificate(live / "fullchain.pem", live / "privkey.pem", days=20)
    database.upsert_domain("a.example.com", user_id=None, ssl_enabled=True, ssl_cert_path=str(live / "fullchain.pem"))
    database.upsert_domain("b.example.com", user_id=None, ssl_enabled=True, ssl_cert_path=str(live / "absent.pem"))

    listed = CertificateManager().list(ctx)

    assert "a.example.com: expires in 19 days (renewal due)" in listed.message
    assert "b.example.com: missing" in listed.message
