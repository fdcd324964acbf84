"""FileBrowser container serving the users' application directories."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import List

from ..context import ProvisionContext
from ..docker import ContainerSpec
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.filemanager")

IMAGE = "filebrowser/filebrowser:v2.24.1"
CONTAINER = "server-panel-filemanager"
PORT = 8080
DATABASE = "/config/filebrowser.db"
PASSWORD_VARIABLE = "FILEBROWSER_PASSWORD"
ADD_USER_SCRIPT = f'exec filebrowser users add "$0" "${PASSWORD_VARIABLE}" "$@"'

_USERNAME = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")


def render_settings() -> str:
    settings = {
        "port": 80,
        "baseURL": "",
        "address": "0.0.0.0",
        "log": "stdout",
        "database": DATABASE,
        "root": "/srv",
    }
    return json.dumps(settings, indent=2) + "\n"


class FileManager(Component):
    name = "filemanager"
    actions = STANDARD_ACTIONS + ("create-user", "remove-user", "list-users")

    def config_dir(self, ctx: ProvisionContext) -> Path:
        return ctx.settings.data_root / "filemanager"

    def container_spec(self, ctx: ProvisionContext) -> ContainerSpec:
        config_dir = self.config_dir(ctx)
        return ContainerSpec(
            name=CONTAINER,
            image=IMAGE,
            network=ctx.settings.network,
            ports=(f"{PORT}:80",),
            volumes=(
                f"{config_dir}:/config",
                f"{ctx.settings.users_dir}:/srv/users",
                f"{ctx.settings.data_root / 'apps'}:/srv/apps",
            ),
            labels=(("server-panel.component", self.name),),
            command=("--config", "/config/settings.json"),
        )

    def _filebrowser(self, ctx: ProvisionContext, *args: str, check: bool = True):
        return ctx.docker.exec(CONTAINER, ["filebrowser", *args, "--database", DATABASE], check=check)

    def _usernames(self, ctx: ProvisionContext) -> List[str]:
        result = self._filebrowser(ctx, "users", "ls", check=False)
        names = []
        # Rows look like "1   admin   /srv/users   true ..." after a header line.
        for line in result.stdout.splitlines()[1:]:
            parts = line.split()
            if len(parts) >= 2 and parts[0].isdigit():
                names.append(parts[1])
        return names

    def install(self, ctx: ProvisionContext) -> StepResult:
        docker = ctx.docker
        changed = ctx.files.ensure_directory(self.config_dir(ctx))
        changed |= ctx.files.ensure_directory(ctx.settings.users_dir)
        changed |= ctx.files.ensure_directory(ctx.settings.data_root / "apps")
        changed |= ctx.files.ensure_file(self.config_dir(ctx) / "settings.json", render_settings())
        changed |= docker.ensure_image(IMAGE)
        changed |= docker.ensure_container(self.container_spec(ctx))
        docker.wait_until_running(CONTAINER)

        if "admin" not in self._usernames(ctx):
            self.create_user(ctx, "admin", ctx.secret("filemanager_password"), "true")
            changed = True
        return self.result("install", changed, f"File manager on port {PORT}", port=PORT)

    def start(self, ctx: ProvisionContext) -> StepResult:
        ctx.docker.start(CONTAINER)
        return self.result("start", True, f"Started {CONTAINER}")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        ctx.docker.stop(CONTAINER)
        return self.result("stop", True, f"Stopped {CONTAINER}")

    def status(self, ctx: ProvisionContext) -> StepResult:
        state = ctx.docker.container_state(CONTAINER) or "missing"
        return self.result("status", False, state, state=state, port=PORT)

    def create_user(self, ctx: ProvisionContext, username: str, password: str, admin: str = "false") -> StepResult:
        username = username.strip().lower()
        if not _USERNAME.match(username):
            raise ValueError(f"Invalid file manager user '{username}'")
        if not password:
            raise ValueError("Password must not be empty")

        scope = "/srv" if username == "admin" else f"/srv/users/{username}"
        if username != "admin":
            ctx.files.ensure_directory(ctx.settings.users_dir / username)
        # argv is logged; the password goes through the environment.
        args = ["sh", "-c", ADD_USER_SCRIPT, username, "--scope", scope, "--database", DATABASE]
        if admin.lower() in ("1", "true", "yes"):
            args.append("--perm.admin")
        ctx.docker.exec(CONTAINER, args, env={PASSWORD_VARIABLE: password})
        return self.result("create-user", True, f"Created file manager user {username}", scope=scope)

    def remove_user(self, ctx: ProvisionContext, username: str) -> StepResult:
        if username == "admin":
            raise ValueError("The admin file manager user cannot be removed")
        if username not in self._usernames(ctx):
            return self.result("remove-user", False, f"No file manager user {username}")
        self._filebrowser(ctx, "users", "rm", username)
        return self.result("remove-user", True, f"Removed file manager user {username}")

    def list_users(self, ctx: ProvisionContext) -> StepResult:
        names = self._usernames(ctx)
        return self.result("list-users", False, ", ".join(names) or "no users", users=names)


__all__ = ["CONTAINER", "FileManager", "IMAGE", "PORT", "render_settings"]
