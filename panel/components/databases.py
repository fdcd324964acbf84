"""MySQL and PostgreSQL containers holding the panel schema."""
from __future__ import annotations

import gzip
import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from ..context import ProvisionContext
from ..database import SEED_USERS, hash_password
from ..docker import ContainerSpec, DependencyError, env_pairs
from ..shell import CommandError
from ..templating import render
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.databases")

SCHEMA_NAME = "server_panel"
SCHEMA_USER = "panel_user"
READY_ATTEMPTS = 30
READY_INTERVAL = 2.0

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def _validate_identifier(value: str, kind: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid {kind} '{value}'")
    return value


def _quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


class DatabaseServer(Component):
    """A database engine running in a container on the panel network."""

    actions = STANDARD_ACTIONS + ("backup", "create-database")
    image = ""
    container = ""
    port = 0
    data_subdir = ""
    data_mount = ""
    schema_template = ""

    def environment(self, ctx: ProvisionContext) -> Dict[str, str]:
        raise NotImplementedError

    def ping_command(self) -> List[str]:
        raise NotImplementedError

    def client_command(self) -> List[str]:
        raise NotImplementedError

    def client_env(self, ctx: ProvisionContext) -> Dict[str, str]:
        return {}

    def dump_command(self) -> List[str]:
        raise NotImplementedError

    def create_database_statements(self, name: str, user: str, password: str) -> str:
        raise NotImplementedError

    def data_dir(self, ctx: ProvisionContext) -> Path:
        return ctx.settings.data_root / self.data_subdir

    def container_spec(self, ctx: ProvisionContext) -> ContainerSpec:
        return ContainerSpec(
            name=self.container,
            image=self.image,
            network=ctx.settings.network,
            ports=(f"127.0.0.1:{self.port}:{self.port}",),
            volumes=(f"{self.data_dir(ctx)}:{self.data_mount}",),
            env=env_pairs(self.environment(ctx)),
            labels=(("server-panel.component", self.name),),
        )

    def seed_users(self, ctx: ProvisionContext) -> List[Dict[str, str]]:
        rows = []
        for username, email, role in SEED_USERS:
            rows.append(
                {
                    "email": email,
                    "password_hash": hash_password(ctx.secret(f"{username}_password")),
                    "role": role,
                }
            )
        return rows

    def wait_until_ready(
        self,
        ctx: ProvisionContext,
        *,
        attempts: int = READY_ATTEMPTS,
        interval: float = READY_INTERVAL,
    ) -> int:
        """Poll the engine until it accepts connections; return the attempt count."""

        docker = ctx.docker
        for attempt in range(1, attempts + 1):
            result = docker.exec(self.container, self.ping_command(), env=self.client_env(ctx), check=False)
            if result.exit_status == 0:
                logger.info("%s is ready after %d attempt(s)", self.name, attempt)
                return attempt
            if attempt < attempts:
                time.sleep(interval)
        raise DependencyError(f"{self.name} did not become ready after {attempts} attempts")

    def execute(self, ctx: ProvisionContext, sql: str) -> None:
        try:
            ctx.docker.exec(self.container, self.client_command(), input=sql, env=self.client_env(ctx))
        except CommandError as exc:
            raise DependencyError(f"{self.name} rejected the SQL statements: {exc}") from exc

    def apply_schema(self, ctx: ProvisionContext) -> None:
        sql = render(self.schema_template, database=SCHEMA_NAME, seed_users=self.seed_users(ctx))
        self.execute(ctx, sql)

    def install(self, ctx: ProvisionContext) -> StepResult:
        docker = ctx.docker
        changed = ctx.files.ensure_directory(self.data_dir(ctx))
        changed |= docker.ensure_image(self.image)
        changed |= docker.ensure_container(self.container_spec(ctx))

        self.wait_until_ready(ctx)
        self.apply_schema(ctx)

        seeded = []
        if not ctx.settings.dry_run:
            ctx.database.initialize()
            seeded = ctx.database.seed_default_users(
                {username: ctx.secret(f"{username}_password") for username, _, _ in SEED_USERS}
            )
        changed |= bool(seeded)

        message = f"{self.name} ready on 127.0.0.1:{self.port}"
        return self.result("install", changed, message, container=self.container, seeded=len(seeded))

    def start(self, ctx: ProvisionContext) -> StepResult:
        ctx.docker.start(self.container)
        return self.result("start", True, f"Started {self.container}")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        ctx.docker.stop(self.container)
        return self.result("stop", True, f"Stopped {self.container}")

    def status(self, ctx: ProvisionContext) -> StepResult:
        state = ctx.docker.container_state(self.container) or "missing"
        return self.result("status", False, state, state=state, container=self.container)

    def backup(self, ctx: ProvisionContext) -> StepResult:
        """Write a gzip-compressed dump of every database."""

        target_dir = ctx.settings.backups_dir / "databases"
        target_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        target = target_dir / f"{self.name}_{stamp}.sql.gz"

        result = ctx.docker.exec(self.container, self.dump_command(), env=self.client_env(ctx))
        with gzip.open(target, "wt", encoding="utf-8") as handle:
            handle.write(result.stdout)
        target.chmod(0o600)
        logger.info("Database dump written to %s", target)
        return self.result("backup", True, f"Dump written to {target}", path=str(target))

    def create_database(self, ctx: ProvisionContext, name: str, user: str, password: str) -> StepResult:
        """Create a database and a user owning it; existing ones are kept."""

        _validate_identifier(name, "database name")
        _validate_identifier(user, "database user")
        if not password:
            raise ValueError("Password must not be empty")
        self.execute(ctx, self.create_database_statements(name, user, password))
        return self.result("create-database", True, f"Database {name} ready for {user}", database=name, user=user)


class MySQLServer(DatabaseServer):
    name = "mysql"
    image = "mysql:8.0"
    container = "server-panel-mysql"
    port = 3306
    data_subdir = "mysql"
    data_mount = "/var/lib/mysql"
    schema_template = "sql/mysql_schema.sql.j2"

    def environment(self, ctx: ProvisionContext) -> Dict[str, str]:
        return {
            "MYSQL_ROOT_PASSWORD": ctx.secret("mysql_root_password"),
            "MYSQL_DATABASE": SCHEMA_NAME,
            "MYSQL_USER": SCHEMA_USER,
            "MYSQL_PASSWORD": ctx.secret("database_password"),
        }

    def client_env(self, ctx: ProvisionContext) -> Dict[str, str]:
        return {"MYSQL_PWD": ctx.secret("mysql_root_password")}

    def ping_command(self) -> List[str]:
        return ["mysqladmin", "ping", "-h", "localhost", "-uroot", "--silent"]

    def client_command(self) -> List[str]:
        return ["mysql", "-uroot"]

    def dump_command(self) -> List[str]:
        return ["mysqldump", "-uroot", "--all-databases", "--single-transaction"]

    def create_database_statements(self, name: str, user: str, password: str) -> str:
        return (
            f"CREATE DATABASE IF NOT EXISTS `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;\n"
            f"CREATE USER IF NOT EXISTS '{user}'@'%' IDENTIFIED BY {_quote_literal(password)};\n"
            f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{user}'@'%';\n"
            "FLUSH PRIVILEGES;\n"
        )


class PostgresServer(DatabaseServer):
    name = "postgres"
    image = "postgres:16"
    container = "server-panel-postgres"
    port = 5432
    data_subdir = "postgres"
    data_mount = "/var/lib/postgresql/data"
    schema_template = "sql/postgres_schema.sql.j2"

    def environment(self, ctx: ProvisionContext) -> Dict[str, str]:
        return {
            "POSTGRES_DB": SCHEMA_NAME,
            "POSTGRES_USER": SCHEMA_USER,
            "POSTGRES_PASSWORD": ctx.secret("database_password"),
        }

    def ping_command(self) -> List[str]:
        return ["pg_isready", "-U", SCHEMA_USER, "-d", SCHEMA_NAME]

    def client_command(self) -> List[str]:
        return ["psql", "-v", "ON_ERROR_STOP=1", "-U", SCHEMA_USER, "-d", SCHEMA_NAME]

    def dump_command(self) -> List[str]:
        return ["pg_dumpall", "-U", SCHEMA_USER]

    def create_database_statements(self, name: str, user: str, password: str) -> str:
        # CREATE DATABASE cannot run inside a DO block, so the existence checks use \gexec.
        return (
            f"SELECT 'CREATE ROLE {user} LOGIN PASSWORD ' || quote_literal({_quote_literal(password)})\n"
            f"WHERE NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = '{user}')\\gexec\n"
            f"SELECT 'CREATE DATABASE {name} OWNER {user}'\n"
            f"WHERE NOT EXISTS (SELECT 1 FROM pg_database WHERE datname = '{name}')\\gexec\n"
        )


__all__ = [
    "DatabaseServer",
    "MySQLServer",
    "PostgresServer",
    "READY_ATTEMPTS",
    "SCHEMA_NAME",
]
