"""FastAPI JSON API for the taxonomy provisioner.

Objective:
    Expose the provisioning workflow implemented in
    :mod:`src.taxonomy_provisioner.provisioner` over HTTP so an onboarding
    flow can trigger it. This module keeps business logic inside the
    provisioner and only handles request parsing and response rendering.

High-level call tree:
    - :func:`create_app`:
        - defines routes:
            - ``GET /health`` -> :func:`health`
            - ``POST /api/preview`` -> :func:`preview_api`
            - ``POST /api/provision`` -> :func:`provision_api`
            - ``GET /api/folder-health`` -> :func:`folder_health_api`
    - :func:`get_provisioner`:
        - returns a new :class:`src.taxonomy_provisioner.provisioner.FolderProvisioner`
          instance.

Data flow:
    - HTTP request -> validate payload -> call provisioner -> JSON response.

Operational notes:
    - Fatal provisioning errors map to status codes: reconnect required ->
      401 (including a provider with no configured credential), forbidden ->
      403, incomplete fetch -> 502. Unknown business types map to 400.
    - For tests, :func:`get_provisioner` is overridden via
      ``app.dependency_overrides``.
    - Served with ``python -m uvicorn src.taxonomy_provisioner.webapp:app``.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import ProviderKind, get_settings
from .errors import (
    FatalProvisioningError,
    FetchIncompleteError,
    ForbiddenError,
    ReconnectRequiredError,
)
from .models import Roster
from .provisioner import FolderProvisioner, provisioning_feedback
from .schema_compiler import CompilationError
from .templates import UnknownBusinessTypeError

TRIGGERS = ("provision", "business_type_change", "team_setup", "onboarding_complete")


class TaxonomyRequest(BaseModel):
    """Business types and team roster shared by every request."""

    business_types: list[str] = Field(default_factory=list, alias="businessTypes")
    managers: list[Any] = Field(default_factory=list)
    suppliers: list[Any] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    def roster(self) -> Roster:
        return Roster(managers=self.managers, suppliers=self.suppliers)


class ProvisionRequest(TaxonomyRequest):
    """Body of ``POST /api/provision``."""

    user_id: str = Field(alias="userId")
    provider: ProviderKind
    force: bool = False
    trigger: str = "provision"


def get_provisioner() -> FolderProvisioner:
    """Create a :class:`~src.taxonomy_provisioner.provisioner.FolderProvisioner`.

    This function exists primarily to support FastAPI dependency injection and
    testing. Production code uses the real provisioner; tests can override this
    dependency with a stub object.

    Returns:
        FolderProvisioner: A new provisioner instance.
    """

    return FolderProvisioner(settings=get_settings())


def _error_response(error: Exception) -> JSONResponse:
    """Map a fatal or input error to a JSON error response."""

    if isinstance(error, ReconnectRequiredError):
        return JSONResponse(
            {"error": "reconnect_required", "message": str(error)}, status_code=401
        )
    if isinstance(error, ForbiddenError):
        return JSONResponse({"error": "forbidden", "message": str(error)}, status_code=403)
    if isinstance(error, FetchIncompleteError):
        return JSONResponse(
            {"error": "fetch_incomplete", "message": str(error)}, status_code=502
        )
    if isinstance(error, (UnknownBusinessTypeError, CompilationError)):
        return JSONResponse(
            {"error": "invalid_taxonomy", "message": str(error)}, status_code=400
        )
    return JSONResponse({"error": "provisioning_failed", "message": str(error)}, status_code=500)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Routes:
        - ``GET /health``:
            Basic liveness check.
        - ``POST /api/preview``:
            Compiles a taxonomy without touching a mailbox.
        - ``POST /api/provision``:
            Runs a provisioning trigger for one mailbox.
        - ``GET /api/folder-health``:
            Returns the health report of one mailbox.

    Returns:
        FastAPI: FastAPI app.
    """

    app = FastAPI(title="Taxonomy Provisioner")

    @app.get("/health")
    def health() -> dict[str, str]:
        """Health check endpoint.

        This is intentionally simple and should not perform external calls.

        Returns:
            dict[str, str]: Health payload.
        """

        return {"status": "ok"}

    @app.post("/api/preview")
    def preview_api(
        payload: TaxonomyRequest,
        provisioner: FolderProvisioner = Depends(get_provisioner),
    ) -> Any:
        """Compile and return a taxonomy.

        Expected request body:
            ``{"businessTypes": ["HVAC"], "managers": ["Alice"], "suppliers": []}``

        Args:
            payload: Business types and roster.
            provisioner: Provisioner dependency.

        Returns:
            Any: Taxonomy payload or an error response.
        """

        try:
            taxonomy = provisioner.preview(payload.business_types, payload.roster())
        except (UnknownBusinessTypeError, CompilationError) as e:
            return _error_response(e)

        return {
            "businessTypes": taxonomy.business_types,
            "categories": [
                node.model_dump(mode="json", by_alias=True, exclude_none=True)
                for node in taxonomy.ordered_categories()
            ],
            "expectedFolders": taxonomy.expected_paths(),
            "totalFolders": taxonomy.node_count(),
        }

    @app.post("/api/provision")
    def provision_api(
        payload: ProvisionRequest,
        provisioner: FolderProvisioner = Depends(get_provisioner),
    ) -> Any:
        """Run a provisioning trigger via JSON API.

        Expected request body:
            ``{"userId": "u1", "provider": "gmail", "businessTypes": ["HVAC"],
            "managers": ["Alice"], "trigger": "team_setup"}``

        Args:
            payload: Provisioning request.
            provisioner: Provisioner dependency.

        Returns:
            Any: Outcome and feedback payload or an error response.
        """

        if payload.trigger not in TRIGGERS:
            return JSONResponse(
                {
                    "error": "invalid_trigger",
                    "message": f"trigger must be one of: {', '.join(TRIGGERS)}",
                },
                status_code=400,
            )

        roster = payload.roster()
        try:
            if payload.trigger == "business_type_change":
                outcome = provisioner.on_business_type_change(
                    payload.user_id, payload.provider, payload.business_types, roster
                )
            elif payload.trigger == "team_setup":
                outcome = provisioner.on_team_setup(
                    payload.user_id, payload.provider, payload.business_types, roster
                )
            elif payload.trigger == "onboarding_complete":
                outcome = provisioner.on_onboarding_complete(
                    payload.user_id, payload.provider, payload.business_types, roster
                )
            else:
                outcome = provisioner.provision(
                    payload.user_id,
                    payload.provider,
                    payload.business_types,
                    roster,
                    force=payload.force,
                )
        except (FatalProvisioningError, UnknownBusinessTypeError, CompilationError) as e:
            return _error_response(e)

        return {
            "outcome": outcome.model_dump(mode="json", by_alias=True),
            "success": outcome.success,
            "feedback": provisioning_feedback(outcome),
        }

    @app.get("/api/folder-health")
    def folder_health_api(
        user_id: str = Query(alias="userId"),
        provider: ProviderKind = Query(),
        business_type: Optional[list[str]] = Query(default=None, alias="businessType"),
        provisioner: FolderProvisioner = Depends(get_provisioner),
    ) -> Any:
        """Return the health report for a mailbox.

        Args:
            user_id: Mailbox owner.
            provider: Mailbox provider.
            business_type: Optional business types for coverage vocabulary.
            provisioner: Provisioner dependency.

        Returns:
            Any: Health report payload or an error response.
        """

        try:
            report = provisioner.check_health(user_id, provider, business_type or None)
        except (FatalProvisioningError, UnknownBusinessTypeError, CompilationError) as e:
            return _error_response(e)

        return report.model_dump(mode="json", by_alias=True)

    return app


app = create_app()
