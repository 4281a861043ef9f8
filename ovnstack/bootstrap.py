"""Destructive reset and creation of the OVSDB store files.

Assumption: this is a dedicated development host and nothing in the
conf, NB or SB databases is worth keeping. Every bring-up deletes the
store files (and any lock artifacts left by an aborted run) and creates
fresh ones from their schemas with ``ovsdb-tool create``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from .errors import BootstrapError, CommandError
from .metrics import STORES_CREATED
from .registry import DataFile, ServiceSpec
from .runner import CommandRunner

logger = logging.getLogger(__name__)

LOCK_GLOB = ".*.db.~lock~"


class StateStoreBootstrapper:
    """Recreates the backing stores of the enabled services."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def reset_and_create(self, data_dir: str | Path, services: Iterable[ServiceSpec]) -> list[Path]:
        """Delete and recreate the store of every service that has one.

        Any failure raises BootstrapError; there is no partial success.
        """
        data_dir = Path(data_dir)
        stores = [spec.store for spec in services if spec.store is not None]

        if self.runner.dry_run:
            for store in stores:
                self._create(store)
            return [store.path for store in stores]

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BootstrapError(f"Cannot create data directory: {e}", store_path=str(data_dir)) from e

        for store in stores:
            self._remove(store)
        # Stale locks from a previous aborted run must not block a fresh start
        for lock in data_dir.glob(LOCK_GLOB):
            self._unlink(lock)

        if stores:
            logger.info(
                "Creating databases: " + ", ".join(store.name for store in stores)
            )
        created = []
        for store in stores:
            self._create(store)
            if not store.path.exists():
                raise BootstrapError(
                    f"{store.name} was not created", store_path=str(store.path)
                )
            STORES_CREATED.labels(store=store.name).inc()
            created.append(store.path)
        return created

    def _remove(self, store: DataFile) -> None:
        for path in (store.path, store.lock_path):
            self._unlink(path)

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
            logger.debug(f"Removed {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise BootstrapError(f"Cannot remove {path.name}: {e}", store_path=str(path)) from e

    def _create(self, store: DataFile) -> None:
        if not self.runner.dry_run and not store.schema.exists():
            raise BootstrapError(
                f"Schema for {store.name} not found: {store.schema}",
                store_path=str(store.path),
            )
        try:
            self.runner.run(["ovsdb-tool", "create", str(store.path), str(store.schema)])
        except CommandError as e:
            raise BootstrapError(
                f"ovsdb-tool could not create {store.name}: {e.message}",
                store_path=str(store.path),
                context=dict(e.context),
            ) from e
