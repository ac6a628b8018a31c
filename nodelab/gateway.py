"""Guacamole connection records for nodelab instances.

The gateway is driven directly through its database schema: one
``guacamole_connection`` row per instance (keyed by ``connection_name``),
its ``guacamole_connection_parameter`` rows and a READ grant for the admin
entity in ``guacamole_connection_permission``.
"""

from __future__ import annotations

from typing import Optional

try:
    from sqlalchemy import create_engine, text
    from sqlalchemy.engine import Connection, Engine, make_url
    from sqlalchemy.exc import SQLAlchemyError
except ImportError as exc:  # pragma: no cover
    raise SystemExit("SQLAlchemy is required but not installed") from exc

from nodelab.constants import (
    GUAC_ADMIN,
    GUAC_DB_TIMEOUT,
    GUAC_MAX_CONNECTIONS,
    GUAC_PROTOCOL_PARAMS,
    GUACAMOLE_URL,
    KIND_PROTOCOLS,
)
from nodelab.exceptions import GatewaySyncFailed
from nodelab.models import InstanceKind
from nodelab.utils import log


def protocol_for(kind: InstanceKind) -> str:
    return KIND_PROTOCOLS[kind.value]


def kind_from_name(name: str) -> InstanceKind:
    """Infer the kind of records written before ``kind`` was stored."""
    if name.startswith(InstanceKind.ROUTER.value):
        return InstanceKind.ROUTER
    return InstanceKind.NODE


def _engine_for(url: str, timeout: int) -> Engine:
    connect_args = {}
    if make_url(url).get_backend_name() in {"mysql", "postgresql"}:
        connect_args["connect_timeout"] = timeout
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


class GuacamoleGateway:
    def __init__(
        self,
        db_url: str,
        base_url: str = GUACAMOLE_URL,
        admin: str = GUAC_ADMIN,
        timeout: int = GUAC_DB_TIMEOUT,
        engine: Optional[Engine] = None,
    ) -> None:
        self.db_url = db_url
        self.base_url = base_url.rstrip("/")
        self.admin = admin
        self.timeout = timeout
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = _engine_for(self.db_url, self.timeout)
        return self._engine

    def console_url(self, connection_id: int) -> str:
        return f"{self.base_url}/#/client/{connection_id}"

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()

    # -- queries ----------------------------------------------------------

    @staticmethod
    def _find(conn: Connection, name: str) -> Optional[int]:
        row = conn.execute(
            text("SELECT connection_id FROM guacamole_connection WHERE connection_name = :name"),
            {"name": name},
        ).first()
        return int(row[0]) if row is not None else None

    @staticmethod
    def _set_parameter(conn: Connection, connection_id: int, parameter: str, value: str) -> None:
        updated = conn.execute(
            text(
                "UPDATE guacamole_connection_parameter SET parameter_value = :value "
                "WHERE connection_id = :id AND parameter_name = :parameter"
            ),
            {"value": value, "id": connection_id, "parameter": parameter},
        )
        if updated.rowcount == 0:
            conn.execute(
                text(
                    "INSERT INTO guacamole_connection_parameter "
                    "(connection_id, parameter_name, parameter_value) VALUES (:id, :parameter, :value)"
                ),
                {"id": connection_id, "parameter": parameter, "value": value},
            )

    @staticmethod
    def _rewrite_hostnames(conn: Connection, address: str) -> int:
        result = conn.execute(
            text(
                "UPDATE guacamole_connection_parameter SET parameter_value = :address "
                "WHERE parameter_name = 'hostname' AND parameter_value <> :address"
            ),
            {"address": address},
        )
        return result.rowcount

    def _grant_read(self, conn: Connection, connection_id: int) -> None:
        row = conn.execute(
            text("SELECT entity_id FROM guacamole_entity WHERE name = :admin AND type = 'USER'"),
            {"admin": self.admin},
        ).first()
        if row is None:
            log("WARN", f"Guacamole user '{self.admin}' not found; connection {connection_id} left ungranted")
            return
        conn.execute(
            text(
                "INSERT INTO guacamole_connection_permission (entity_id, connection_id, permission) "
                "VALUES (:entity, :id, 'READ')"
            ),
            {"entity": row[0], "id": connection_id},
        )

    @staticmethod
    def _insert_connection(conn: Connection, name: str, protocol: str) -> int:
        sql = (
            "INSERT INTO guacamole_connection "
            "(connection_name, protocol, max_connections, max_connections_per_user) "
            "VALUES (:name, :protocol, :max, :max)"
        )
        params = {"name": name, "protocol": protocol, "max": GUAC_MAX_CONNECTIONS}
        # PostgreSQL has no lastrowid; MySQL has no RETURNING.
        if conn.dialect.insert_returning:
            return int(conn.execute(text(sql + " RETURNING connection_id"), params).scalar_one())
        return int(conn.execute(text(sql), params).lastrowid)

    # -- operations -------------------------------------------------------

    def sync_connection(self, name: str, address: str, port: Optional[int], protocol: str) -> int:
        """Create the connection for ``name`` or correct the existing one in place."""
        if protocol not in GUAC_PROTOCOL_PARAMS:
            raise GatewaySyncFailed(f"Unsupported console protocol '{protocol}'")
        if port is None:
            raise GatewaySyncFailed(f"No {protocol} port allocated for {name}")
        try:
            with self.engine.begin() as conn:
                connection_id = self._find(conn, name)
                if connection_id is not None:
                    self._set_parameter(conn, connection_id, "port", str(port))
                    fixed = conn.execute(
                        text(
                            "UPDATE guacamole_connection SET protocol = :protocol "
                            "WHERE connection_id = :id AND protocol <> :protocol"
                        ),
                        {"protocol": protocol, "id": connection_id},
                    )
                    if fixed.rowcount:
                        log("INFO", f"Corrected protocol of {name} to {protocol}")
                    self._set_parameter(conn, connection_id, "hostname", address)
                    swept = self._rewrite_hostnames(conn, address)
                    if swept:
                        log("INFO", f"Rewrote hostname on {swept} Guacamole connection(s) to {address}")
                    log("INFO", f"Updated {protocol.upper()} port for {name} -> {port}")
                    return connection_id

                connection_id = self._insert_connection(conn, name, protocol)
                params = [("hostname", address), ("port", str(port))]
                params.extend(GUAC_PROTOCOL_PARAMS[protocol])
                for parameter, value in params:
                    conn.execute(
                        text(
                            "INSERT INTO guacamole_connection_parameter "
                            "(connection_id, parameter_name, parameter_value) VALUES (:id, :parameter, :value)"
                        ),
                        {"id": connection_id, "parameter": parameter, "value": value},
                    )
                self._grant_read(conn, connection_id)
        except SQLAlchemyError as exc:
            raise GatewaySyncFailed(f"Could not sync Guacamole connection for {name}: {exc}") from exc

        log("SUCCESS", f"Created Guacamole connection {connection_id} for {name} ({protocol} port {port})")
        return connection_id

    def get_connection_id(self, name: str) -> Optional[int]:
        try:
            with self.engine.connect() as conn:
                return self._find(conn, name)
        except SQLAlchemyError as exc:
            raise GatewaySyncFailed(f"Could not look up Guacamole connection for {name}: {exc}") from exc

    def delete_connection(self, name: str) -> bool:
        try:
            with self.engine.begin() as conn:
                connection_id = self._find(conn, name)
                if connection_id is None:
                    return False
                for table in ("guacamole_connection_parameter", "guacamole_connection_permission"):
                    conn.execute(text(f"DELETE FROM {table} WHERE connection_id = :id"), {"id": connection_id})
                conn.execute(
                    text("DELETE FROM guacamole_connection WHERE connection_id = :id"),
                    {"id": connection_id},
                )
        except SQLAlchemyError as exc:
            raise GatewaySyncFailed(f"Could not delete Guacamole connection for {name}: {exc}") from exc
        log("INFO", f"Deleted Guacamole connection for {name}")
        return True

    def refresh_addresses(self, address: str) -> int:
        try:
            with self.engine.begin() as conn:
                return self._rewrite_hostnames(conn, address)
        except SQLAlchemyError as exc:
            raise GatewaySyncFailed(f"Could not rewrite Guacamole hostnames: {exc}") from exc
