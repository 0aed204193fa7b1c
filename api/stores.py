"""
api/stores.py -- Wiring: one Stores bundle per process.

Builds the shared engine, creates missing tables, instantiates one repository
per entity family and the RBAC Authorizer over them. The FastAPI lifespan
puts the bundle on app.state.stores; the CLI builds its own.

Nothing here is a module-level singleton -- tests build as many isolated
bundles as they like.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Engine

from auth import store as auth_store
from auth.store import RegistrationTokens, Sessions, UserAccessKeys, Users
from core.db import create_store_engine
from fleet import store as fleet_store
from fleet.store import (
    Applications,
    DeviceAccessKeys,
    DeviceApplicationStatuses,
    DeviceLabels,
    DeviceRegistrationTokens,
    Devices,
    DeviceServiceStatuses,
    Releases,
)
from iam import store as iam_store
from iam.rbac import Authorizer
from iam.store import (
    MembershipRoleBindings,
    Memberships,
    Projects,
    Roles,
    ServiceAccountAccessKeys,
    ServiceAccountRoleBindings,
    ServiceAccounts,
)
from liveness.store import DeviceStatusStore


@dataclass
class Stores:
    engine: Engine
    # Credential vault + users
    users: Users
    registration_tokens: RegistrationTokens
    sessions: Sessions
    user_access_keys: UserAccessKeys
    # Identity graph
    projects: Projects
    roles: Roles
    memberships: Memberships
    membership_role_bindings: MembershipRoleBindings
    service_accounts: ServiceAccounts
    service_account_access_keys: ServiceAccountAccessKeys
    service_account_role_bindings: ServiceAccountRoleBindings
    # Fleet state
    devices: Devices
    device_labels: DeviceLabels
    device_access_keys: DeviceAccessKeys
    device_registration_tokens: DeviceRegistrationTokens
    applications: Applications
    releases: Releases
    device_application_statuses: DeviceApplicationStatuses
    device_service_statuses: DeviceServiceStatuses
    # Liveness + authorization
    device_status: DeviceStatusStore
    authorizer: Authorizer

    @classmethod
    def open(
        cls,
        db_url: str,
        status_db_path: Path | str,
        clock: Callable[[], float] = time.time,
    ) -> "Stores":
        engine = create_store_engine(db_url)
        auth_store.init_schema(engine)
        iam_store.init_schema(engine)
        fleet_store.init_schema(engine)

        roles = Roles(engine)
        memberships = Memberships(engine)
        membership_role_bindings = MembershipRoleBindings(engine)
        service_accounts = ServiceAccounts(engine)
        service_account_role_bindings = ServiceAccountRoleBindings(engine)
        return cls(
            engine=engine,
            users=Users(engine),
            registration_tokens=RegistrationTokens(engine),
            sessions=Sessions(engine),
            user_access_keys=UserAccessKeys(engine),
            projects=Projects(engine),
            roles=roles,
            memberships=memberships,
            membership_role_bindings=membership_role_bindings,
            service_accounts=service_accounts,
            service_account_access_keys=ServiceAccountAccessKeys(engine),
            service_account_role_bindings=service_account_role_bindings,
            devices=Devices(engine),
            device_labels=DeviceLabels(engine),
            device_access_keys=DeviceAccessKeys(engine),
            device_registration_tokens=DeviceRegistrationTokens(engine),
            applications=Applications(engine),
            releases=Releases(engine),
            device_application_statuses=DeviceApplicationStatuses(engine),
            device_service_statuses=DeviceServiceStatuses(engine),
            device_status=DeviceStatusStore(status_db_path, clock=clock),
            authorizer=Authorizer(
                roles, memberships, membership_role_bindings, service_accounts, service_account_role_bindings
            ),
        )

    def close(self) -> None:
        self.device_status.close()
        self.engine.dispose()
