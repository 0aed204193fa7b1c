"""
api/routes/v1/applications.py -- Applications and their immutable releases.

Routes (all under /api/v1/projects/{project}):
  POST   /applications                                        -- applications:create
  GET    /applications                                        -- applications:read
  GET    /applications/{application}                          -- applications:read (with device count)
  PUT    /applications/{application}                          -- applications:update
  DELETE /applications/{application}                          -- applications:delete
  POST   /applications/{application}/releases                 -- releases:create
  GET    /applications/{application}/releases                 -- releases:read (newest first)
  GET    /applications/{application}/releases/latest          -- releases:read
  GET    /applications/{application}/releases/{release_id}    -- releases:read (with device count)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import ApplicationResponse, ApplicationWrite, ReleaseCreate, ReleaseResponse
from auth.dependencies import require_capability
from fleet.models import Application, Release
from iam.models import Project

router = APIRouter()

_PREFIX = "/projects/{project}/applications"


def _app_response(app: Application, device_count: int | None = None) -> ApplicationResponse:
    return ApplicationResponse(
        id=app.id,
        project_id=app.project_id,
        name=app.name,
        description=app.description,
        settings=app.settings,
        created_at=app.created_at,
        device_count=device_count,
    )


def _release_response(release: Release, device_count: int | None = None) -> ReleaseResponse:
    return ReleaseResponse(
        id=release.id,
        project_id=release.project_id,
        application_id=release.application_id,
        config=release.config,
        created_at=release.created_at,
        device_count=device_count,
    )


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------


@router.post(_PREFIX, response_model=ApplicationResponse, status_code=201)
def create_application(
    request: Request,
    body: ApplicationWrite,
    project: Project = Depends(require_capability("applications", "create")),
) -> ApplicationResponse:
    app = request.app.state.stores.applications.create_application(
        project.id, body.name, body.description, body.settings
    )
    return _app_response(app)


@router.get(_PREFIX, response_model=list[ApplicationResponse])
def list_applications(
    request: Request, project: Project = Depends(require_capability("applications", "read"))
) -> list[ApplicationResponse]:
    return [_app_response(a) for a in request.app.state.stores.applications.list_applications(project.id)]


@router.get(_PREFIX + "/{application}", response_model=ApplicationResponse)
def get_application(
    application: str,
    request: Request,
    project: Project = Depends(require_capability("applications", "read")),
) -> ApplicationResponse:
    stores = request.app.state.stores
    app = stores.applications.lookup_application(application, project.id)
    counts = stores.device_application_statuses.get_application_device_counts(project.id, app.id)
    return _app_response(app, counts.all_count)


@router.put(_PREFIX + "/{application}", response_model=ApplicationResponse)
def update_application(
    application: str,
    request: Request,
    body: ApplicationWrite,
    project: Project = Depends(require_capability("applications", "update")),
) -> ApplicationResponse:
    apps = request.app.state.stores.applications
    existing = apps.lookup_application(application, project.id)
    updated = apps.update_application(existing.id, project.id, body.name, body.description, body.settings)
    return _app_response(updated)


@router.delete(_PREFIX + "/{application}", status_code=204)
def delete_application(
    application: str,
    request: Request,
    project: Project = Depends(require_capability("applications", "delete")),
) -> Response:
    apps = request.app.state.stores.applications
    apps.delete_application(apps.lookup_application(application, project.id).id, project.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------------


@router.post(_PREFIX + "/{application}/releases", response_model=ReleaseResponse, status_code=201)
def create_release(
    application: str,
    request: Request,
    body: ReleaseCreate,
    project: Project = Depends(require_capability("releases", "create")),
) -> ReleaseResponse:
    stores = request.app.state.stores
    app = stores.applications.lookup_application(application, project.id)
    return _release_response(stores.releases.create_release(project.id, app.id, body.config))


@router.get(_PREFIX + "/{application}/releases", response_model=list[ReleaseResponse])
def list_releases(
    application: str,
    request: Request,
    project: Project = Depends(require_capability("releases", "read")),
) -> list[ReleaseResponse]:
    stores = request.app.state.stores
    app = stores.applications.lookup_application(application, project.id)
    return [_release_response(r) for r in stores.releases.list_releases(project.id, app.id)]


# Registered before /{release_id} so "latest" is not captured as an id.
@router.get(_PREFIX + "/{application}/releases/latest", response_model=ReleaseResponse)
def get_latest_release(
    application: str,
    request: Request,
    project: Project = Depends(require_capability("releases", "read")),
) -> ReleaseResponse:
    stores = request.app.state.stores
    app = stores.applications.lookup_application(application, project.id)
    return _release_response(stores.releases.get_latest_release(project.id, app.id))


@router.get(_PREFIX + "/{application}/releases/{release_id}", response_model=ReleaseResponse)
def get_release(
    application: str,
    release_id: str,
    request: Request,
    project: Project = Depends(require_capability("releases", "read")),
) -> ReleaseResponse:
    stores = request.app.state.stores
    app = stores.applications.lookup_application(application, project.id)
    release = stores.releases.get_release(release_id, project.id, app.id)
    counts = stores.device_application_statuses.get_release_device_counts(project.id, app.id, release.id)
    return _release_response(release, counts.all_count)
