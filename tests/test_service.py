"""End-to-end tests for the panel API and dashboard."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from panel.database import Database
from panel.service import VERSION, create_api_app, create_app, create_dashboard_app


class PanelApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.database = Database(Path(self._tempdir.name) / "panel.sqlite3")
        self.database.initialize()
        self.admin_password = "AdminSecret123!"
        self.user_password = "UserSecret123!"
        self.admin = self.database.create_user("admin", "admin@panelo.com", self.admin_password, role="admin")
        self.user = self.database.create_user("alice", "alice@example.com", self.user_password)
        self.database.create_application(
            self.admin.id,
            "blog",
            "wordpress",
            domain="blog.example.com",
            port=7000,
            config={"variant": "default", "db_password": "hidden"},
        )
        self.database.create_application(self.user.id, "api", "nodejs", domain="api.example.com", port=3003)
        self.client = TestClient(create_api_app(database=self.database))

    def tearDown(self) -> None:
        self.client.close()
        self._tempdir.cleanup()

    def _login(self, email: str, password: str) -> str:
        response = self.client.post("/auth/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["access_token"]

    def test_index_lists_endpoints(self) -> None:
        response = self.client.get("/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["version"], VERSION)
        self.assertEqual(payload["endpoints"]["health"], "/health")
        self.assertEqual(self.client.get("/auth").json()["login"], "/auth/login")

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_login_and_logout(self) -> None:
        response = self.client.post(
            "/auth/login", json={"email": "admin@panelo.com", "password": self.admin_password}
        )
        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertEqual(payload["token_type"], "bearer")
        self.assertEqual(payload["user"]["role"], "admin")

        headers = {"Authorization": f"Bearer {payload['access_token']}"}
        self.assertEqual(self.client.get("/apps", headers=headers).status_code, 200)

        logout = self.client.post("/auth/logout", headers=headers)
        self.assertEqual(logout.json(), {"status": "logged_out", "revoked": True})
        self.assertEqual(self.client.get("/apps", headers=headers).status_code, 401)

    def test_login_rejects_bad_credentials_and_inactive_users(self) -> None:
        wrong = self.client.post("/auth/login", json={"email": "admin@panelo.com", "password": "nope"})
        self.assertEqual(wrong.status_code, 401)

        self.database.set_user_status(self.user.id, "inactive")
        inactive = self.client.post(
            "/auth/login", json={"email": "alice@example.com", "password": self.user_password}
        )
        self.assertEqual(inactive.status_code, 403)

    def test_deactivated_user_loses_issued_tokens(self) -> None:
        token = self._login("alice@example.com", self.user_password)
        headers = {"Authorization": f"Bearer {token}"}
        self.assertEqual(self.client.get("/apps", headers=headers).status_code, 200)

        self.database.set_user_status(self.user.id, "inactive")

        self.assertEqual(self.client.get("/apps", headers=headers).status_code, 401)
        self.assertIsNone(self.client.app.state.tokens.resolve(token))

    def test_apps_requires_authentication(self) -> None:
        self.assertEqual(self.client.get("/apps").status_code, 401)
        basic = self.client.get("/apps", auth=("admin@panelo.com", self.admin_password))
        self.assertEqual(basic.status_code, 200)

    def test_admin_sees_every_application_without_secrets(self) -> None:
        token = self._login("admin@panelo.com", self.admin_password)

        response = self.client.get("/apps", headers={"Authorization": f"Bearer {token}"})

        applications = response.json()["applications"]
        self.assertEqual([app["name"] for app in applications], ["blog", "api"])
        self.assertEqual(applications[0]["config"], {"variant": "default"})

        filtered = self.client.get(
            "/apps", params={"user": "alice"}, headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual([app["name"] for app in filtered.json()["applications"]], ["api"])

        missing = self.client.get(
            "/apps", params={"user": "nobody"}, headers={"Authorization": f"Bearer {token}"}
        )
        self.assertEqual(missing.status_code, 404)

    def test_regular_user_only_sees_own_applications(self) -> None:
        token = self._login("alice@example.com", self.user_password)
        headers = {"Authorization": f"Bearer {token}"}

        own = self.client.get("/apps", headers=headers)
        self.assertEqual([app["name"] for app in own.json()["applications"]], ["api"])

        other = self.client.get("/apps", params={"user": "admin"}, headers=headers)
        self.assertEqual(other.status_code, 403)

    def test_system_reports_host_metrics(self) -> None:
        response = self.client.get("/system")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        for key in ("hostname", "platform", "load", "memory", "disk", "uptime_seconds"):
            self.assertIn(key, payload)


class DashboardTests(unittest.TestCase):
    def test_dashboard_links_to_the_services(self) -> None:
        with TestClient(create_dashboard_app(api_port=3005)) as client:
            response = client.get("/")

        self.assertEqual(response.status_code, 200)
        self.assertIn("text/html", response.headers["content-type"])
        self.assertIn("Server Panel", response.text)
        self.assertIn("http://testserver:3005/", response.text)
        self.assertIn("http://testserver:3002/", response.text)

    def test_dashboard_health(self) -> None:
        with TestClient(create_dashboard_app()) as client:
            self.assertEqual(client.get("/health").json()["status"], "healthy")


class CombinedAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.database = Database(Path(self._tempdir.name) / "panel.sqlite3")

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_api_is_mounted_under_api_prefix(self) -> None:
        with TestClient(create_app(database=self.database)) as client:
            self.assertIn("text/html", client.get("/").headers["content-type"])
            self.assertEqual(client.get("/api/health").json()["status"], "healthy")
            self.assertEqual(client.get("/api/apps").status_code, 401)

    def test_single_service_apps(self) -> None:
        api_only = create_app(database=self.database, include_dashboard=False)
        with TestClient(api_only) as client:
            self.assertEqual(client.get("/").json()["endpoints"]["apps"], "/apps")

        with self.assertRaises(ValueError):
            create_app(database=self.database, include_api=False, include_dashboard=False)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
