"""
fleet/store.py -- SQLAlchemy Core persistence for fleet state.

Repositories (one per entity family, each built from an injected Engine):
  Devices, DeviceLabels, DeviceAccessKeys, DeviceRegistrationTokens,
  Applications, Releases, DeviceApplicationStatuses, DeviceServiceStatuses

Scoping: every scoped Get/Update/Delete takes project_id (and application_id
for releases) and filters on it in SQL, so an id that lives under another
project raises the kind's NotFound error rather than returning the record.

register_device() is the one multi-entity write: it binds a registration
token, creates the device and mints its access key in one transaction.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine

from core.db import Repository, create_schema, new_id, now_iso, transaction, upsert
from core.errors import (
    ApplicationNotFoundError,
    DeviceAccessKeyNotFoundError,
    DeviceApplicationStatusNotFoundError,
    DeviceLabelNotFoundError,
    DeviceNotFoundError,
    DeviceRegistrationTokenNotFoundError,
    DeviceServiceStatusNotFoundError,
    ReleaseNotFoundError,
    ValidationError,
)
from fleet.models import (
    Application,
    ApplicationCounts,
    Device,
    DeviceAccessKey,
    DeviceApplicationStatus,
    DeviceCounts,
    DeviceLabel,
    DeviceRegistrationToken,
    DeviceServiceStatus,
    Release,
)

logger = logging.getLogger("fleetplane.fleet")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_devices = Table(
    "devices",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("info", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("project_id", "name", name="uq_device_project_name"),
)

_device_labels = Table(
    "device_labels",
    metadata,
    Column("key", String(100), nullable=False),
    Column("device_id", String(32), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("value", Text, nullable=False),
    PrimaryKeyConstraint("key", "device_id", "project_id"),
)

_device_access_keys = Table(
    "device_access_keys",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False),
    Column("device_id", String(32), nullable=False, index=True),
    Column("hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_device_registration_tokens = Table(
    "device_registration_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False),
    Column("device_access_key_id", String(32)),  # NULL until bound
    Column("created_at", String(32), nullable=False),
)

_applications = Table(
    "applications",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("project_id", String(32), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("settings", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("project_id", "name", name="uq_application_project_name"),
)

_releases = Table(
    "releases",
    metadata,
    # seq gives a strict creation order; created_at can tie within a tick.
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(32), nullable=False, unique=True),
    Column("project_id", String(32), nullable=False),
    Column("application_id", String(32), nullable=False, index=True),
    Column("config", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_device_application_statuses = Table(
    "device_application_statuses",
    metadata,
    Column("project_id", String(32), nullable=False),
    Column("device_id", String(32), nullable=False),
    Column("application_id", String(32), nullable=False),
    Column("current_release_id", String(32), nullable=False),
    PrimaryKeyConstraint("project_id", "device_id", "application_id"),
)

_device_service_statuses = Table(
    "device_service_statuses",
    metadata,
    Column("project_id", String(32), nullable=False),
    Column("device_id", String(32), nullable=False),
    Column("application_id", String(32), nullable=False),
    Column("service", String(100), nullable=False),
    Column("current_release_id", String(32), nullable=False),
    PrimaryKeyConstraint("project_id", "device_id", "application_id", "service"),
)


def init_schema(engine: Engine) -> None:
    create_schema(engine, metadata)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class Devices(Repository):
    def create_device(self, project_id: str, name: str | None = None) -> Device:
        """Insert a device. Without a name, one is derived from the new id."""
        device_id = new_id("dev")
        device = Device(
            id=device_id,
            project_id=project_id,
            name=name or f"device-{device_id[-8:]}",
            created_at=now_iso(),
        )
        with self._tx() as conn:
            conn.execute(
                _devices.insert().values(
                    id=device.id,
                    project_id=project_id,
                    name=device.name,
                    info="{}",
                    created_at=device.created_at,
                )
            )
        return device

    def get_device(self, id: str, project_id: str) -> Device:
        with self._tx() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.id == id) & (_devices.c.project_id == project_id))
            ).fetchone()
        if row is None:
            raise DeviceNotFoundError(id)
        return _row_to_device(row)

    def lookup_device(self, name: str, project_id: str) -> Device:
        with self._tx() as conn:
            row = conn.execute(
                _devices.select().where((_devices.c.name == name) & (_devices.c.project_id == project_id))
            ).fetchone()
        if row is None:
            raise DeviceNotFoundError(name)
        return _row_to_device(row)

    def list_devices(self, project_id: str) -> list[Device]:
        with self._tx() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.project_id == project_id).order_by(_devices.c.created_at)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def set_device_info(self, id: str, project_id: str, info: dict) -> Device:
        """Replace the device's self-reported info blob."""
        with self._tx() as conn:
            result = conn.execute(
                _devices.update()
                .where((_devices.c.id == id) & (_devices.c.project_id == project_id))
                .values(info=json.dumps(info))
            )
            if result.rowcount == 0:
                raise DeviceNotFoundError(id)
            return self.get_device(id, project_id)

    def get_project_device_counts(self, project_id: str) -> DeviceCounts:
        with self._tx() as conn:
            count = conn.execute(
                select(func.count()).select_from(_devices).where(_devices.c.project_id == project_id)
            ).scalar()
        return DeviceCounts(all_count=count or 0)


class DeviceLabels(Repository):
    """Key/value labels on a device. Setting an existing key overwrites it."""

    def set_device_label(self, key: str, device_id: str, project_id: str, value: str) -> DeviceLabel:
        with self._tx() as conn:
            Devices(self.engine).get_device(device_id, project_id)
            upsert(
                conn,
                _device_labels,
                {"key": key, "device_id": device_id, "project_id": project_id, "value": value},
                ["key", "device_id", "project_id"],
            )
        return DeviceLabel(key=key, device_id=device_id, project_id=project_id, value=value)

    def get_device_label(self, key: str, device_id: str, project_id: str) -> DeviceLabel:
        lbl = _device_labels.c
        with self._tx() as conn:
            row = conn.execute(
                _device_labels.select().where(
                    (lbl.key == key) & (lbl.device_id == device_id) & (lbl.project_id == project_id)
                )
            ).fetchone()
        if row is None:
            raise DeviceLabelNotFoundError(key)
        return _row_to_device_label(row)

    def list_device_labels(self, device_id: str, project_id: str) -> list[DeviceLabel]:
        lbl = _device_labels.c
        with self._tx() as conn:
            rows = conn.execute(
                _device_labels.select()
                .where((lbl.device_id == device_id) & (lbl.project_id == project_id))
                .order_by(lbl.key)
            ).fetchall()
        return [_row_to_device_label(r) for r in rows]

    def delete_device_label(self, key: str, device_id: str, project_id: str) -> None:
        lbl = _device_labels.c
        with self._tx() as conn:
            result = conn.execute(
                _device_labels.delete().where(
                    (lbl.key == key) & (lbl.device_id == device_id) & (lbl.project_id == project_id)
                )
            )
        if result.rowcount == 0:
            raise DeviceLabelNotFoundError(key)


# ---------------------------------------------------------------------------
# Device credentials
# ---------------------------------------------------------------------------


class DeviceAccessKeys(Repository):
    def create_device_access_key(self, project_id: str, device_id: str, hash: str) -> DeviceAccessKey:
        key = DeviceAccessKey(
            id=new_id("dak"), project_id=project_id, device_id=device_id, hash=hash, created_at=now_iso()
        )
        with self._tx() as conn:
            Devices(self.engine).get_device(device_id, project_id)
            conn.execute(
                _device_access_keys.insert().values(
                    id=key.id, project_id=project_id, device_id=device_id, hash=hash, created_at=key.created_at
                )
            )
        return key

    def get_device_access_key(self, id: str, project_id: str) -> DeviceAccessKey:
        k = _device_access_keys.c
        with self._tx() as conn:
            row = conn.execute(
                _device_access_keys.select().where((k.id == id) & (k.project_id == project_id))
            ).fetchone()
        if row is None:
            raise DeviceAccessKeyNotFoundError(id)
        return _row_to_device_access_key(row)

    def validate_device_access_key(self, project_id: str, hash: str) -> DeviceAccessKey:
        """Resolve a device key hash within one project."""
        k = _device_access_keys.c
        with self._tx() as conn:
            row = conn.execute(
                _device_access_keys.select().where((k.hash == hash) & (k.project_id == project_id))
            ).fetchone()
        if row is None:
            raise DeviceAccessKeyNotFoundError()
        return _row_to_device_access_key(row)


class DeviceRegistrationTokens(Repository):
    def create_device_registration_token(self, project_id: str) -> DeviceRegistrationToken:
        token = DeviceRegistrationToken(id=new_id("drt"), project_id=project_id, created_at=now_iso())
        with self._tx() as conn:
            conn.execute(
                _device_registration_tokens.insert().values(
                    id=token.id, project_id=project_id, device_access_key_id=None, created_at=token.created_at
                )
            )
        return token

    def get_device_registration_token(self, id: str, project_id: str) -> DeviceRegistrationToken:
        t = _device_registration_tokens.c
        with self._tx() as conn:
            row = conn.execute(
                _device_registration_tokens.select().where((t.id == id) & (t.project_id == project_id))
            ).fetchone()
        if row is None:
            raise DeviceRegistrationTokenNotFoundError(id)
        return _row_to_device_registration_token(row)

    def bind_device_registration_token(
        self, id: str, project_id: str, device_access_key_id: str
    ) -> DeviceRegistrationToken:
        """Bind the token to a device access key. Irreversible and single-use.

        The UPDATE only matches while device_access_key_id IS NULL, so of two
        concurrent binds exactly one succeeds; the other, and every later
        attempt, raises ValidationError.
        """
        t = _device_registration_tokens.c
        with self._tx() as conn:
            result = conn.execute(
                update(_device_registration_tokens)
                .where((t.id == id) & (t.project_id == project_id) & t.device_access_key_id.is_(None))
                .values(device_access_key_id=device_access_key_id)
            )
            if result.rowcount == 0:
                # Distinguish "no such token" from "already bound".
                self.get_device_registration_token(id, project_id)
                raise ValidationError("device registration token has already been used")
            return self.get_device_registration_token(id, project_id)


def register_device(
    engine: Engine, project_id: str, registration_token_id: str, access_key_hash: str, name: str | None = None
) -> tuple[Device, DeviceAccessKey]:
    """Turn a registration token into a device and its access key, atomically.

    Raises DeviceRegistrationTokenNotFoundError for an unknown token and
    ValidationError for a token that is already bound. Nothing is written in
    either case.
    """
    with transaction(engine):
        tokens = DeviceRegistrationTokens(engine)
        token = tokens.get_device_registration_token(registration_token_id, project_id)
        if token.device_access_key_id is not None:
            raise ValidationError("device registration token has already been used")
        device = Devices(engine).create_device(project_id, name)
        key = DeviceAccessKeys(engine).create_device_access_key(project_id, device.id, access_key_hash)
        tokens.bind_device_registration_token(token.id, project_id, key.id)
    logger.info("Device %s registered in project %s", device.id, project_id)
    return device, key


# ---------------------------------------------------------------------------
# Applications and releases
# ---------------------------------------------------------------------------


class Applications(Repository):
    def create_application(
        self, project_id: str, name: str, description: str = "", settings: dict | None = None
    ) -> Application:
        app = Application(
            id=new_id("app"),
            project_id=project_id,
            name=name,
            description=description,
            settings=settings or {},
            created_at=now_iso(),
        )
        with self._tx() as conn:
            conn.execute(
                _applications.insert().values(
                    id=app.id,
                    project_id=project_id,
                    name=name,
                    description=description,
                    settings=json.dumps(app.settings),
                    created_at=app.created_at,
                )
            )
        return app

    def get_application(self, id: str, project_id: str) -> Application:
        a = _applications.c
        with self._tx() as conn:
            row = conn.execute(_applications.select().where((a.id == id) & (a.project_id == project_id))).fetchone()
        if row is None:
            raise ApplicationNotFoundError(id)
        return _row_to_application(row)

    def lookup_application(self, name: str, project_id: str) -> Application:
        a = _applications.c
        with self._tx() as conn:
            row = conn.execute(
                _applications.select().where((a.name == name) & (a.project_id == project_id))
            ).fetchone()
        if row is None:
            raise ApplicationNotFoundError(name)
        return _row_to_application(row)

    def list_applications(self, project_id: str) -> list[Application]:
        a = _applications.c
        with self._tx() as conn:
            rows = conn.execute(_applications.select().where(a.project_id == project_id).order_by(a.name)).fetchall()
        return [_row_to_application(r) for r in rows]

    def update_application(
        self, id: str, project_id: str, name: str, description: str, settings: dict
    ) -> Application:
        a = _applications.c
        with self._tx() as conn:
            result = conn.execute(
                _applications.update()
                .where((a.id == id) & (a.project_id == project_id))
                .values(name=name, description=description, settings=json.dumps(settings))
            )
            if result.rowcount == 0:
                raise ApplicationNotFoundError(id)
            return self.get_application(id, project_id)

    def delete_application(self, id: str, project_id: str) -> None:
        a = _applications.c
        with self._tx() as conn:
            result = conn.execute(_applications.delete().where((a.id == id) & (a.project_id == project_id)))
        if result.rowcount == 0:
            raise ApplicationNotFoundError(id)

    def get_project_application_counts(self, project_id: str) -> ApplicationCounts:
        with self._tx() as conn:
            count = conn.execute(
                select(func.count()).select_from(_applications).where(_applications.c.project_id == project_id)
            ).scalar()
        return ApplicationCounts(all_count=count or 0)


class Releases(Repository):
    """Immutable releases. There is no update or delete."""

    def create_release(self, project_id: str, application_id: str, config: str) -> Release:
        release = Release(
            id=new_id("rel"),
            project_id=project_id,
            application_id=application_id,
            config=config,
            created_at=now_iso(),
        )
        with self._tx() as conn:
            Applications(self.engine).get_application(application_id, project_id)
            conn.execute(
                _releases.insert().values(
                    id=release.id,
                    project_id=project_id,
                    application_id=application_id,
                    config=config,
                    created_at=release.created_at,
                )
            )
        return release

    def get_release(self, id: str, project_id: str, application_id: str) -> Release:
        r = _releases.c
        with self._tx() as conn:
            row = conn.execute(
                _releases.select().where(
                    (r.id == id) & (r.project_id == project_id) & (r.application_id == application_id)
                )
            ).fetchone()
        if row is None:
            raise ReleaseNotFoundError(id)
        return _row_to_release(row)

    def get_latest_release(self, project_id: str, application_id: str) -> Release:
        r = _releases.c
        with self._tx() as conn:
            row = conn.execute(
                _releases.select()
                .where((r.project_id == project_id) & (r.application_id == application_id))
                .order_by(r.seq.desc())
                .limit(1)
            ).fetchone()
        if row is None:
            raise ReleaseNotFoundError(application_id)
        return _row_to_release(row)

    def list_releases(self, project_id: str, application_id: str) -> list[Release]:
        """Return the application's releases, newest first."""
        r = _releases.c
        with self._tx() as conn:
            rows = conn.execute(
                _releases.select()
                .where((r.project_id == project_id) & (r.application_id == application_id))
                .order_by(r.seq.desc())
            ).fetchall()
        return [_row_to_release(row) for row in rows]


# ---------------------------------------------------------------------------
# Device-reported statuses (last write wins per key)
# ---------------------------------------------------------------------------


class DeviceApplicationStatuses(Repository):
    def set_device_application_status(
        self, project_id: str, device_id: str, application_id: str, current_release_id: str
    ) -> None:
        """Record which release a device runs for an application.

        The device must belong to the project and the release to the (project,
        application) pair.
        """
        with self._tx() as conn:
            Devices(self.engine).get_device(device_id, project_id)
            Releases(self.engine).get_release(current_release_id, project_id, application_id)
            upsert(
                conn,
                _device_application_statuses,
                {
                    "project_id": project_id,
                    "device_id": device_id,
                    "application_id": application_id,
                    "current_release_id": current_release_id,
                },
                ["project_id", "device_id", "application_id"],
            )

    def get_device_application_status(
        self, project_id: str, device_id: str, application_id: str
    ) -> DeviceApplicationStatus:
        s = _device_application_statuses.c
        with self._tx() as conn:
            row = conn.execute(
                _device_application_statuses.select().where(
                    (s.project_id == project_id) & (s.device_id == device_id) & (s.application_id == application_id)
                )
            ).fetchone()
        if row is None:
            raise DeviceApplicationStatusNotFoundError(f"{device_id}/{application_id}")
        return DeviceApplicationStatus(
            project_id=row.project_id,
            device_id=row.device_id,
            application_id=row.application_id,
            current_release_id=row.current_release_id,
        )

    def get_application_device_counts(self, project_id: str, application_id: str) -> DeviceCounts:
        """Devices that have reported any release of the application."""
        s = _device_application_statuses.c
        with self._tx() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_device_application_statuses)
                .where((s.project_id == project_id) & (s.application_id == application_id))
            ).scalar()
        return DeviceCounts(all_count=count or 0)

    def get_release_device_counts(self, project_id: str, application_id: str, release_id: str) -> DeviceCounts:
        """Devices currently running the given release."""
        s = _device_application_statuses.c
        with self._tx() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_device_application_statuses)
                .where(
                    (s.project_id == project_id)
                    & (s.application_id == application_id)
                    & (s.current_release_id == release_id)
                )
            ).scalar()
        return DeviceCounts(all_count=count or 0)


class DeviceServiceStatuses(Repository):
    def set_device_service_status(
        self, project_id: str, device_id: str, application_id: str, service: str, current_release_id: str
    ) -> None:
        with self._tx() as conn:
            Devices(self.engine).get_device(device_id, project_id)
            Releases(self.engine).get_release(current_release_id, project_id, application_id)
            upsert(
                conn,
                _device_service_statuses,
                {
                    "project_id": project_id,
                    "device_id": device_id,
                    "application_id": application_id,
                    "service": service,
                    "current_release_id": current_release_id,
                },
                ["project_id", "device_id", "application_id", "service"],
            )

    def get_device_service_status(
        self, project_id: str, device_id: str, application_id: str, service: str
    ) -> DeviceServiceStatus:
        s = _device_service_statuses.c
        with self._tx() as conn:
            row = conn.execute(
                _device_service_statuses.select().where(
                    (s.project_id == project_id)
                    & (s.device_id == device_id)
                    & (s.application_id == application_id)
                    & (s.service == service)
                )
            ).fetchone()
        if row is None:
            raise DeviceServiceStatusNotFoundError(f"{device_id}/{application_id}/{service}")
        return _row_to_device_service_status(row)

    def get_device_service_statuses(
        self, project_id: str, device_id: str, application_id: str
    ) -> list[DeviceServiceStatus]:
        s = _device_service_statuses.c
        with self._tx() as conn:
            rows = conn.execute(
                _device_service_statuses.select()
                .where((s.project_id == project_id) & (s.device_id == device_id) & (s.application_id == application_id))
                .order_by(s.service)
            ).fetchall()
        return [_row_to_device_service_status(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        info=json.loads(row.info) if row.info else {},
        created_at=row.created_at,
    )


def _row_to_device_label(row) -> DeviceLabel:
    return DeviceLabel(key=row.key, device_id=row.device_id, project_id=row.project_id, value=row.value)


def _row_to_device_access_key(row) -> DeviceAccessKey:
    return DeviceAccessKey(
        id=row.id, project_id=row.project_id, device_id=row.device_id, hash=row.hash, created_at=row.created_at
    )


def _row_to_device_registration_token(row) -> DeviceRegistrationToken:
    return DeviceRegistrationToken(
        id=row.id,
        project_id=row.project_id,
        device_access_key_id=row.device_access_key_id,
        created_at=row.created_at,
    )


def _row_to_application(row) -> Application:
    return Application(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        description=row.description,
        settings=json.loads(row.settings) if row.settings else {},
        created_at=row.created_at,
    )


def _row_to_release(row) -> Release:
    return Release(
        id=row.id,
        project_id=row.project_id,
        application_id=row.application_id,
        config=row.config,
        created_at=row.created_at,
    )


def _row_to_device_service_status(row) -> DeviceServiceStatus:
    return DeviceServiceStatus(
        project_id=row.project_id,
        device_id=row.device_id,
        application_id=row.application_id,
        service=row.service,
        current_release_id=row.current_release_id,
    )
