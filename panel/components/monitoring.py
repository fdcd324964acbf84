"""Prometheus, Alertmanager, node-exporter and Grafana as a compose project."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import yaml

from ..context import ProvisionContext
from ..docker import DependencyError
from ..shell import CommandError
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.monitoring")

PROJECT = "server-panel-monitoring"
GRAFANA_PORT = 3002
PROMETHEUS_PORT = 9090
ALERTMANAGER_PORT = 9093
NODE_EXPORTER_PORT = 9100

ALERT_RULES = [
    {
        "alert": "HighCPUUsage",
        "expr": '100 - (avg by(instance) (rate(node_cpu_seconds_total{mode="idle"}[5m])) * 100) > 80',
        "for": "5m",
        "labels": {"severity": "warning"},
        "annotations": {"summary": "CPU usage above 80% on {{ $labels.instance }}"},
    },
    {
        "alert": "HighMemoryUsage",
        "expr": "(node_memory_MemTotal_bytes - node_memory_MemAvailable_bytes) / node_memory_MemTotal_bytes * 100 > 85",
        "for": "5m",
        "labels": {"severity": "warning"},
        "annotations": {"summary": "Memory usage above 85% on {{ $labels.instance }}"},
    },
    {
        "alert": "LowDiskSpace",
        "expr": "(node_filesystem_avail_bytes / node_filesystem_size_bytes) * 100 < 10",
        "for": "5m",
        "labels": {"severity": "critical"},
        "annotations": {"summary": "Less than 10% disk space left on {{ $labels.instance }}"},
    },
    {
        "alert": "TargetDown",
        "expr": "up == 0",
        "for": "1m",
        "labels": {"severity": "critical"},
        "annotations": {"summary": "{{ $labels.job }} target {{ $labels.instance }} is down"},
    },
]


def _dump(document: object) -> str:
    return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)


def prometheus_config() -> Dict[str, object]:
    return {
        "global": {"scrape_interval": "15s", "evaluation_interval": "15s"},
        "rule_files": ["/etc/prometheus/rules/*.yml"],
        "alerting": {"alertmanagers": [{"static_configs": [{"targets": [f"alertmanager:{ALERTMANAGER_PORT}"]}]}]},
        "scrape_configs": [
            {"job_name": "prometheus", "static_configs": [{"targets": [f"localhost:{PROMETHEUS_PORT}"]}]},
            {"job_name": "node-exporter", "static_configs": [{"targets": [f"node-exporter:{NODE_EXPORTER_PORT}"]}]},
        ],
    }


def alertmanager_config() -> Dict[str, object]:
    # No notification channel; alerts are only visible in the Alertmanager UI.
    return {
        "route": {
            "group_by": ["alertname"],
            "group_wait": "10s",
            "group_interval": "10s",
            "repeat_interval": "1h",
            "receiver": "panel-admin",
        },
        "receivers": [{"name": "panel-admin"}],
    }


def compose_config(network: str, grafana_password: str) -> Dict[str, object]:
    return {
        "services": {
            "prometheus": {
                "image": "prom/prometheus:latest",
                "container_name": "server-panel-prometheus",
                "restart": "unless-stopped",
                "command": [
                    "--config.file=/etc/prometheus/prometheus.yml",
                    "--storage.tsdb.path=/prometheus",
                    "--storage.tsdb.retention.time=15d",
                ],
                "ports": [f"{PROMETHEUS_PORT}:9090"],
                "volumes": [
                    "./prometheus.yml:/etc/prometheus/prometheus.yml:ro",
                    "./rules:/etc/prometheus/rules:ro",
                    "prometheus-data:/prometheus",
                ],
                "networks": [network],
            },
            "alertmanager": {
                "image": "prom/alertmanager:latest",
                "container_name": "server-panel-alertmanager",
                "restart": "unless-stopped",
                "command": ["--config.file=/etc/alertmanager/alertmanager.yml"],
                "ports": [f"{ALERTMANAGER_PORT}:9093"],
                "volumes": ["./alertmanager.yml:/etc/alertmanager/alertmanager.yml:ro"],
                "networks": [network],
            },
            "node-exporter": {
                "image": "prom/node-exporter:latest",
                "container_name": "server-panel-node-exporter",
                "restart": "unless-stopped",
                "command": ["--path.rootfs=/host"],
                "pid": "host",
                "ports": [f"127.0.0.1:{NODE_EXPORTER_PORT}:9100"],
                "volumes": ["/:/host:ro,rslave"],
                "networks": [network],
            },
            "grafana": {
                "image": "grafana/grafana:latest",
                "container_name": "server-panel-grafana",
                "restart": "unless-stopped",
                "environment": {
                    "GF_SECURITY_ADMIN_USER": "admin",
                    "GF_SECURITY_ADMIN_PASSWORD": grafana_password,
                    "GF_USERS_ALLOW_SIGN_UP": "false",
                },
                "ports": [f"{GRAFANA_PORT}:3000"],
                "volumes": ["grafana-data:/var/lib/grafana"],
                "networks": [network],
            },
        },
        "volumes": {"prometheus-data": {}, "grafana-data": {}},
        "networks": {network: {"external": True}},
    }


class MonitoringStack(Component):
    name = "monitoring"
    actions = STANDARD_ACTIONS + ("logs",)

    def directory(self, ctx: ProvisionContext) -> Path:
        return ctx.settings.data_root / "monitoring"

    def compose_file(self, ctx: ProvisionContext) -> Path:
        return self.directory(ctx) / "docker-compose.yml"

    def _compose(self, ctx: ProvisionContext, *args: str, check: bool = True):
        try:
            return ctx.docker.compose(self.compose_file(ctx), PROJECT, *args, check=check)
        except CommandError as exc:
            raise DependencyError(f"docker compose {' '.join(args)} failed: {exc}") from exc

    def _services(self, ctx: ProvisionContext) -> Dict[str, str]:
        """Map each service of the project to its state; empty when nothing runs."""

        result = self._compose(ctx, "ps", "--format", "{{.Service}} {{.State}}", check=False)
        services: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                services[parts[0]] = parts[1]
        return services

    def install(self, ctx: ProvisionContext) -> StepResult:
        directory = self.directory(ctx)
        files = ctx.files
        changed = files.ensure_directory(directory / "rules")
        changed |= files.ensure_file(directory / "prometheus.yml", _dump(prometheus_config()))
        changed |= files.ensure_file(
            directory / "rules" / "server-panel.yml",
            _dump({"groups": [{"name": "server-panel", "rules": ALERT_RULES}]}),
        )
        changed |= files.ensure_file(directory / "alertmanager.yml", _dump(alertmanager_config()))
        changed |= files.ensure_file(
            self.compose_file(ctx),
            _dump(compose_config(ctx.settings.network, ctx.secret("grafana_password"))),
            mode=0o600,
        )

        already_up = any(state == "running" for state in self._services(ctx).values())
        if changed or not already_up:
            self._compose(ctx, "up", "-d")
            changed = True
        if not already_up:
            ctx.journal.record(
                "Started the monitoring stack",
                undo={
                    "kind": "command",
                    "args": [ctx.settings.docker_bin, "compose", "-f", str(self.compose_file(ctx)), "-p", PROJECT, "down"],
                },
            )
        message = f"Grafana on {GRAFANA_PORT}, Prometheus on {PROMETHEUS_PORT}, Alertmanager on {ALERTMANAGER_PORT}"
        return self.result("install", changed, message, ports=[GRAFANA_PORT, PROMETHEUS_PORT, ALERTMANAGER_PORT])

    def start(self, ctx: ProvisionContext) -> StepResult:
        self._compose(ctx, "up", "-d")
        return self.result("start", True, "Started the monitoring stack")

    def stop(self, ctx: ProvisionContext) -> StepResult:
        self._compose(ctx, "stop")
        return self.result("stop", True, "Stopped the monitoring stack")

    def restart(self, ctx: ProvisionContext) -> StepResult:
        self._compose(ctx, "restart")
        return self.result("restart", True, "Restarted the monitoring stack")

    def status(self, ctx: ProvisionContext) -> StepResult:
        if not self.compose_file(ctx).exists():
            return self.result("status", False, "not installed", state="missing")
        services = self._services(ctx)
        lines: List[str] = [f"{service}: {state}" for service, state in services.items()]
        return self.result("status", False, ", ".join(lines) or "no services running", services=services)

    def logs(self, ctx: ProvisionContext, service: str = "") -> StepResult:
        args = ["logs", "--tail", "100"]
        if service:
            args.append(service)
        result = self._compose(ctx, *args, check=False)
        return self.result("logs", False, (result.stdout + result.stderr).rstrip())


__all__ = [
    "ALERTMANAGER_PORT",
    "GRAFANA_PORT",
    "MonitoringStack",
    "PROMETHEUS_PORT",
    "alertmanager_config",
    "compose_config",
    "prometheus_config",
]
