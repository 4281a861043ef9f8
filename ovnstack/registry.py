"""Service registry: which services are enabled and in what order they start.

The registry is a pure function of a service catalog and a set of feature
flags. Everything downstream (store bootstrap, launch, teardown) consumes
the resulting ServiceGraph instead of re-evaluating flags.

Usage:
    from ovnstack.registry import ServiceRegistry

    graph = ServiceRegistry(catalog).resolve({"ovn-northd": True})
    for spec in graph.startup_order:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError
from .readiness import ReadinessCheck

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Bring-up phase a service belongs to."""
    STORES = "stores"
    CONTROLLERS = "controllers"


@dataclass(frozen=True)
class DataFile:
    """On-disk database backing one service, created from ``schema``."""
    path: Path
    schema: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def lock_path(self) -> Path:
        """Lock artifact ovsdb leaves beside the store (``.<name>.~lock~``)."""
        return self.path.parent / f".{self.path.name}.~lock~"


@dataclass(frozen=True)
class ServiceSpec:
    """Static description of one daemon.

    ``flags`` lists the feature flags that enable the service; an empty
    tuple means the service is enabled by its own name.
    """
    name: str
    flags: tuple[str, ...] = ()
    depends_on: frozenset[str] = field(default_factory=frozenset)
    phase: Phase = Phase.CONTROLLERS
    launch_command: tuple[str, ...] = ()
    readiness: Optional[ReadinessCheck] = None
    stop_command: tuple[str, ...] = ()
    pid_file: Optional[Path] = None
    socket: Optional[Path] = None
    log_name: Optional[str] = None
    store: Optional[DataFile] = None
    post_start: tuple[tuple[str, ...], ...] = ()
    needs_runtime_dir: bool = False
    run_as_root: bool = False
    owns_datapath: bool = False

    @property
    def enabling_flags(self) -> tuple[str, ...]:
        return self.flags or (self.name,)

    @property
    def log_basename(self) -> str:
        return self.log_name or self.name

    def enabled_by(self, flags: Mapping[str, bool]) -> bool:
        """True when any enabling flag is set. Unknown flags count as unset."""
        return any(bool(flags.get(flag, False)) for flag in self.enabling_flags)


class ServiceGraph:
    """Enabled services in startup (dependency) order."""

    def __init__(self, ordered: list[ServiceSpec], external: frozenset[str] = frozenset()):
        self._ordered = list(ordered)
        self._by_name = {spec.name: spec for spec in self._ordered}
        self.external = external

    def __iter__(self) -> Iterator[ServiceSpec]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"ServiceGraph({', '.join(self.names)})"

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self._ordered]

    @property
    def startup_order(self) -> list[ServiceSpec]:
        return list(self._ordered)

    @property
    def teardown_order(self) -> list[ServiceSpec]:
        return list(reversed(self._ordered))

    def get(self, name: str) -> ServiceSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Service not enabled: {name}") from None

    def is_enabled(self, name: str) -> bool:
        return name in self._by_name

    def dependencies(self, name: str) -> list[str]:
        """Locally enabled dependencies of ``name``, in startup order."""
        deps = self.get(name).depends_on
        return [spec.name for spec in self._ordered if spec.name in deps]

    def phase(self, phase: Phase) -> list[ServiceSpec]:
        return [spec for spec in self._ordered if spec.phase == phase]

    def stores(self) -> list[ServiceSpec]:
        return [spec for spec in self._ordered if spec.store is not None]


class ServiceRegistry:
    """Resolves a catalog of ServiceSpecs against feature flags."""

    def __init__(self, catalog: Iterable[ServiceSpec]):
        self.catalog = list(catalog)
        seen: set[str] = set()
        for spec in self.catalog:
            if spec.name in seen:
                raise ConfigurationError(f"Duplicate service in catalog: {spec.name}")
            seen.add(spec.name)

    def resolve(
        self,
        flags: Mapping[str, bool] | Iterable[str],
        external: Iterable[str] = (),
    ) -> ServiceGraph:
        """Return the enabled-service DAG for ``flags``.

        ``external`` names services provided elsewhere (e.g. remote stores):
        they satisfy dependencies but are never created, launched or gated
        locally.
        """
        if not isinstance(flags, Mapping):
            flags = {name: True for name in flags}
        external_set = frozenset(external)

        enabled = [
            spec for spec in self.catalog
            if spec.name not in external_set and spec.enabled_by(flags)
        ]
        enabled_names = {spec.name for spec in enabled}

        for spec in enabled:
            missing = spec.depends_on - enabled_names - external_set
            if missing:
                raise ConfigurationError(
                    f"Service {spec.name} depends on services that are neither "
                    f"enabled nor external: {', '.join(sorted(missing))}",
                    context={"service": spec.name},
                )

        ordered = self._topological(enabled)
        logger.debug(
            f"Resolved services: {', '.join(s.name for s in ordered) or '(none)'}"
            + (f"; external: {', '.join(sorted(external_set))}" if external_set else "")
        )
        return ServiceGraph(ordered, external_set)

    @staticmethod
    def _topological(enabled: list[ServiceSpec]) -> list[ServiceSpec]:
        # Kahn's algorithm, always taking the earliest ready service in
        # catalog order so the result is deterministic.
        names = {spec.name for spec in enabled}
        placed: set[str] = set()
        ordered: list[ServiceSpec] = []
        pending = list(enabled)

        while pending:
            for spec in pending:
                if (spec.depends_on & names) <= placed:
                    ordered.append(spec)
                    placed.add(spec.name)
                    pending.remove(spec)
                    break
            else:
                raise ConfigurationError(
                    "Service dependencies form a cycle: "
                    + ", ".join(spec.name for spec in pending)
                )
        return ordered
