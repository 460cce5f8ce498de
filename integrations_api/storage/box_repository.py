"""Persistencia de Boxes (SQLAlchemy, SQL explícito con ``text()``).

Cada escritura:

1. valida el subdocumento ``integrations`` (nada se persiste si falla)
2. calcula los dot-paths modificados y llama ``hooks.on_before_save``
3. hace UPDATE condicionado a la revisión leída (concurrencia optimista)
4. tras el commit llama ``hooks.on_after_save`` (o ``on_save_failed``) con
   el mismo cambio que devolvió ``on_before_save``

El DELETE emite ``DeviceRemoved`` solo después del commit.

La revisión se incrementa en cada commit y viaja en los eventos, de modo
que el coordinador aplica siempre el último commit.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import orjson
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine

from ..errors import BoxNotFoundError, ConcurrentUpdateError
from ..lifecycle.changes import changed_paths
from ..lifecycle.coordinator import DeviceMqttState
from ..lifecycle.events import LifecycleHooks
from ..models.integrations import IntegrationConfig, MqttConfig, TtnConfig
from ..models.validation import validate_integrations

logger = logging.getLogger(__name__)

_BLOCK_MODELS: dict[str, type[BaseModel]] = {"mqtt": MqttConfig, "ttn": TtnConfig}


@dataclass(frozen=True)
class BoxRecord:
    id: str
    name: str
    integrations: IntegrationConfig
    revision: int
    created_at: str
    updated_at: str

    def to_document(self) -> dict[str, Any]:
        return {"name": self.name, "integrations": self.integrations.to_document()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "integrations": self.integrations.to_document(),
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_box_id() -> str:
    return secrets.token_hex(12)


def _canonical_block(block_name: str, block: Mapping[str, Any]) -> dict[str, Any]:
    """Renombra claves snake_case a su alias camelCase almacenado."""
    model = _BLOCK_MODELS.get(block_name)
    if model is None:
        return dict(block)
    aliases = {name: f.alias for name, f in model.model_fields.items() if f.alias}
    return {aliases.get(key, key): value for key, value in block.items()}


def merge_integrations(stored: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Aplica un PATCH sobre el subdocumento almacenado.

    - bloque ``None`` → se elimina
    - bloque objeto → sus claves se mezclan sobre el bloque almacenado
    - cualquier otro valor se deja tal cual para que lo rechace la validación
    """
    merged: dict[str, Any] = {key: dict(value) for key, value in stored.items()}
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, Mapping):
            base = merged.get(key)
            block = dict(base) if isinstance(base, Mapping) else {}
            block.update(_canonical_block(key, value))
            merged[key] = block
        else:
            merged[key] = value
    return merged


class BoxRepository:
    """Acceso a BD para Boxes."""

    def __init__(self, engine: Engine, hooks: Optional[LifecycleHooks] = None):
        self._engine = engine
        self._hooks = hooks

    def ensure_schema(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text("""
                    CREATE TABLE IF NOT EXISTS boxes (
                        id VARCHAR(32) PRIMARY KEY,
                        name VARCHAR(255) NOT NULL,
                        integrations TEXT NOT NULL,
                        revision INTEGER NOT NULL,
                        created_at VARCHAR(40) NOT NULL,
                        updated_at VARCHAR(40) NOT NULL
                    )
                """)
            )

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------

    @staticmethod
    def _to_record(row: Any) -> BoxRecord:
        return BoxRecord(
            id=row.id,
            name=row.name,
            integrations=IntegrationConfig.model_validate(orjson.loads(row.integrations or "{}")),
            revision=int(row.revision),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get(self, box_id: str) -> BoxRecord:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("""
                    SELECT id, name, integrations, revision, created_at, updated_at
                    FROM boxes WHERE id = :id
                """),
                {"id": box_id},
            ).fetchone()
        if row is None:
            raise BoxNotFoundError(box_id)
        return self._to_record(row)

    def list_boxes(self) -> list[BoxRecord]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("""
                    SELECT id, name, integrations, revision, created_at, updated_at
                    FROM boxes ORDER BY created_at
                """)
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def list_mqtt_states(self) -> list[DeviceMqttState]:
        """Estado MQTT almacenado de todos los Boxes, para el reconcile."""
        with self._engine.connect() as conn:
            rows = conn.execute(text("SELECT id, integrations, revision FROM boxes")).fetchall()

        states = []
        for row in rows:
            config = IntegrationConfig.model_validate(orjson.loads(row.integrations or "{}"))
            states.append(DeviceMqttState(device_id=row.id, config=config.mqtt, revision=int(row.revision)))
        return states

    # ------------------------------------------------------------------
    # Escritura
    # ------------------------------------------------------------------

    def create(self, name: str, integrations: Optional[Mapping[str, Any]] = None) -> BoxRecord:
        """Crea un Box.

        Raises:
            IntegrationValidationError: ``integrations`` inválido; no se persiste nada
        """
        config = validate_integrations(integrations).raise_for_errors()
        now = _now()
        record = BoxRecord(
            id=_new_box_id(),
            name=name,
            integrations=config,
            revision=1,
            created_at=now,
            updated_at=now,
        )

        paths = changed_paths({}, record.to_document())
        change = None
        if self._hooks is not None:
            change = self._hooks.on_before_save(record.id, paths, config.mqtt, None, record.revision)

        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text("""
                        INSERT INTO boxes (id, name, integrations, revision, created_at, updated_at)
                        VALUES (:id, :name, :integrations, :revision, :created_at, :updated_at)
                    """),
                    {
                        "id": record.id,
                        "name": record.name,
                        "integrations": orjson.dumps(config.to_document()).decode(),
                        "revision": record.revision,
                        "created_at": record.created_at,
                        "updated_at": record.updated_at,
                    },
                )
        except Exception:
            if self._hooks is not None:
                self._hooks.on_save_failed(record.id, record.revision, change)
            raise

        logger.info("[STORAGE] box=%s created (mqtt_enabled=%s)", record.id, config.mqtt_enabled)
        if self._hooks is not None:
            self._hooks.on_after_save(record.id, config.mqtt, record.revision, change=change)
        return record

    def update(
        self,
        box_id: str,
        *,
        name: Optional[str] = None,
        integrations: Optional[Mapping[str, Any]] = None,
        expected_revision: Optional[int] = None,
    ) -> BoxRecord:
        """Actualiza nombre y/o integraciones de un Box.

        Args:
            integrations: PATCH por bloque (ver ``merge_integrations``)
            expected_revision: si se indica, la escritura falla si el Box cambió

        Raises:
            BoxNotFoundError
            IntegrationValidationError: no se persiste nada
            ConcurrentUpdateError: otra escritura ganó la carrera
        """
        current = self.get(box_id)
        if expected_revision is not None and expected_revision != current.revision:
            raise ConcurrentUpdateError(box_id, expected_revision)

        if integrations is not None:
            merged = merge_integrations(current.integrations.to_document(), integrations)
            config = validate_integrations(merged).raise_for_errors()
        else:
            config = current.integrations

        updated = BoxRecord(
            id=current.id,
            name=name if name is not None else current.name,
            integrations=config,
            revision=current.revision + 1,
            created_at=current.created_at,
            updated_at=_now(),
        )

        paths = changed_paths(current.to_document(), updated.to_document())
        if not paths:
            return current

        change = None
        if self._hooks is not None:
            change = self._hooks.on_before_save(box_id, paths, config.mqtt, current.integrations.mqtt, updated.revision)

        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("""
                        UPDATE boxes
                        SET name = :name, integrations = :integrations,
                            revision = :revision, updated_at = :updated_at
                        WHERE id = :id AND revision = :expected
                    """),
                    {
                        "id": box_id,
                        "name": updated.name,
                        "integrations": orjson.dumps(config.to_document()).decode(),
                        "revision": updated.revision,
                        "updated_at": updated.updated_at,
                        "expected": current.revision,
                    },
                )
                if result.rowcount == 0:
                    raise ConcurrentUpdateError(box_id, current.revision)
        except Exception:
            if self._hooks is not None:
                self._hooks.on_save_failed(box_id, updated.revision, change)
            raise

        logger.info(
            "[STORAGE] box=%s updated revision=%d paths=%s",
            box_id,
            updated.revision,
            sorted(paths),
        )
        if self._hooks is not None:
            self._hooks.on_after_save(box_id, config.mqtt, updated.revision, change=change)
        return updated

    def delete(self, box_id: str) -> None:
        """Elimina un Box; la conexión MQTT se cierra siempre, esté o no habilitada."""
        removed = self._hooks.on_before_remove(box_id) if self._hooks is not None else None

        try:
            with self._engine.begin() as conn:
                result = conn.execute(text("DELETE FROM boxes WHERE id = :id"), {"id": box_id})
                if result.rowcount == 0:
                    raise BoxNotFoundError(box_id)
        except BoxNotFoundError:
            raise
        except Exception:
            if removed is not None:
                self._hooks.on_remove_failed(removed)
            raise

        logger.info("[STORAGE] box=%s deleted", box_id)
        if removed is not None:
            self._hooks.on_after_remove(removed)
