"""Declarative component manifest and dependency-ordered provisioning plans."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Tuple

logger = logging.getLogger("serverpanel.plan")

EXCLUSIVE_GROUPS = ("webserver", "database")


@dataclass(frozen=True)
class ComponentSpec:
    """Static description of one installable component.

    ``requires`` lists component names, or ``@group`` meaning "any enabled
    member of that group".
    """

    name: str
    group: str
    requires: Tuple[str, ...] = ()
    optional: bool = True
    ports: Tuple[int, ...] = ()
    supervised: bool = False
    description: str = ""


MANIFEST: Tuple[ComponentSpec, ...] = (
    ComponentSpec("base", "core", optional=False, ports=(22,), description="Base OS packages"),
    ComponentSpec("docker", "core", requires=("base",), optional=False, description="Container runtime"),
    ComponentSpec("nginx", "webserver", requires=("base",), ports=(80, 443), description="NGINX web server"),
    ComponentSpec("apache", "webserver", requires=("base",), ports=(80, 443), description="Apache web server"),
    ComponentSpec("mysql", "database", requires=("docker",), description="MySQL database"),
    ComponentSpec("postgres", "database", requires=("docker",), description="PostgreSQL database"),
    ComponentSpec("wordpress", "runtime", requires=("docker", "@webserver", "mysql"), description="WordPress sites"),
    ComponentSpec("php", "runtime", requires=("docker", "@webserver"), description="PHP applications"),
    ComponentSpec("nodejs", "runtime", requires=("docker", "@webserver"), description="Node.js applications"),
    ComponentSpec("python", "runtime", requires=("docker", "@webserver"), description="Python applications"),
    ComponentSpec("static", "runtime", requires=("docker", "@webserver"), description="Static sites"),
    ComponentSpec(
        "filemanager", "ancillary", requires=("docker",), ports=(8080,), supervised=True, description="File browser"
    ),
    ComponentSpec("ssl", "ancillary", requires=("@webserver",), description="TLS certificates"),
    ComponentSpec(
        "monitoring",
        "ancillary",
        requires=("docker",),
        ports=(3002, 9090, 9093),
        supervised=True,
        description="Prometheus, Alertmanager and Grafana",
    ),
    ComponentSpec("backup", "ancillary", requires=("base",), description="Scheduled backups"),
    ComponentSpec(
        "panel",
        "panel",
        requires=("docker",),
        optional=False,
        ports=(3000, 3001),
        supervised=True,
        description="Panel API and dashboard",
    ),
    ComponentSpec("firewall", "system", requires=("base",), optional=False, description="Firewall rules"),
    ComponentSpec("supervisor", "system", requires=("panel",), optional=False, description="systemd unit"),
)

_BY_NAME: Dict[str, ComponentSpec] = {spec.name: spec for spec in MANIFEST}


def get_spec(name: str) -> ComponentSpec:
    try:
        return _BY_NAME[name]
    except KeyError as exc:
        raise ValueError(f"Unknown component '{name}'") from exc


def optional_components() -> List[ComponentSpec]:
    return [spec for spec in MANIFEST if spec.optional]


@dataclass(frozen=True)
class Plan:
    """An ordered selection of components."""

    components: Tuple[ComponentSpec, ...]
    skipped: Tuple[Tuple[str, str], ...] = ()

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(spec.name for spec in self.components)

    @property
    def ports(self) -> Tuple[int, ...]:
        return tuple(sorted({port for spec in self.components for port in spec.ports}))

    @property
    def supervised(self) -> Tuple[ComponentSpec, ...]:
        """Supervised components, panel services first."""

        ordered = sorted(
            (spec for spec in self.components if spec.supervised),
            key=lambda spec: (spec.group != "panel", MANIFEST.index(spec)),
        )
        return tuple(ordered)

    def member(self, group: str) -> str | None:
        for spec in self.components:
            if spec.group == group:
                return spec.name
        return None

    def __contains__(self, name: object) -> bool:
        return name in self.names


def _requirement_met(requirement: str, selected: FrozenSet[str]) -> bool:
    if requirement.startswith("@"):
        group = requirement[1:]
        return any(_BY_NAME[name].group == group for name in selected)
    return requirement in selected


def build_plan(enabled: Iterable[str]) -> Plan:
    """Resolve the enabled component names into a dependency-ordered plan.

    Mandatory components are always added. Components whose requirements are
    not part of the plan are skipped rather than failing the whole run.
    """

    requested = {name.strip().lower() for name in enabled if name.strip()}
    unknown = sorted(name for name in requested if name not in _BY_NAME)
    if unknown:
        raise ValueError(f"Unknown component(s): {', '.join(unknown)}")

    for group in EXCLUSIVE_GROUPS:
        members = sorted(name for name in requested if _BY_NAME[name].group == group)
        if len(members) > 1:
            raise ValueError(f"Only one {group} can be enabled, got: {', '.join(members)}")

    selected = set(requested) | {spec.name for spec in MANIFEST if not spec.optional}

    skipped: List[Tuple[str, str]] = []
    changed = True
    while changed:
        changed = False
        for spec in MANIFEST:
            if spec.name not in selected:
                continue
            missing = [req for req in spec.requires if not _requirement_met(req, frozenset(selected))]
            if missing:
                if not spec.optional:
                    raise ValueError(
                        f"Mandatory component '{spec.name}' is missing requirement(s): {', '.join(missing)}"
                    )
                selected.discard(spec.name)
                reason = f"requires {', '.join(req.lstrip('@') for req in missing)}"
                skipped.append((spec.name, reason))
                logger.warning("Skipping %s: %s", spec.name, reason)
                changed = True

    # MANIFEST is declared in dependency order, so filtering keeps a valid topological order.
    components = tuple(spec for spec in MANIFEST if spec.name in selected)
    return Plan(components=components, skipped=tuple(skipped))


__all__ = [
    "ComponentSpec",
    "EXCLUSIVE_GROUPS",
    "MANIFEST",
    "Plan",
    "build_plan",
    "get_spec",
    "optional_components",
]
