from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from src.taxonomy_provisioner.config import ProviderKind
from src.taxonomy_provisioner.errors import (
    FetchIncompleteError,
    ForbiddenError,
    ReconnectRequiredError,
)
from src.taxonomy_provisioner.models import (
    ClassifierCoverage,
    ContainerLevel,
    HealthReport,
    ProvisionedEntry,
    ProvisioningResult,
    Roster,
)
from src.taxonomy_provisioner.provisioner import ProvisioningOutcome
from src.taxonomy_provisioner.schema_compiler import SchemaCompiler
from src.taxonomy_provisioner.templates import UnknownBusinessTypeError
from src.taxonomy_provisioner.webapp import create_app, get_provisioner


def _outcome(skipped=False):
    return ProvisioningOutcome(
        user_id="u1",
        provider=ProviderKind.GMAIL,
        business_types=["HVAC"],
        skipped=skipped,
        result=ProvisioningResult(
            created=[
                ProvisionedEntry(
                    name="SERVICE", path="SERVICE", remote_id="Label_7", kind=ContainerLevel.CATEGORY
                )
            ]
        ),
        label_map={"SERV": "Label_7"},
        health=HealthReport(total_expected=1, total_found=1, all_present=True, health_percentage=100.0),
    )


@pytest.fixture
def provisioner():
    return MagicMock()


@pytest.fixture
def client(provisioner):
    app = create_app()
    app.dependency_overrides[get_provisioner] = lambda: provisioner
    return TestClient(app)


def test_health() -> None:
    """Health endpoint returns ok."""

    app = create_app()
    client = TestClient(app)

    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_preview_returns_compiled_taxonomy(client, provisioner) -> None:
    """Preview compiles without touching a mailbox."""

    provisioner.preview.side_effect = SchemaCompiler().compile

    resp = client.post(
        "/api/preview",
        json={"businessTypes": ["HVAC"], "managers": ["Alice"], "suppliers": []},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["businessTypes"] == ["HVAC"]
    assert payload["categories"][0]["name"] == "BANKING"
    assert "MANAGER/Alice" in payload["expectedFolders"]
    assert payload["totalFolders"] == len(payload["expectedFolders"])
    provisioner.preview.assert_called_once_with(["HVAC"], Roster.from_names(["Alice"], []))


def test_preview_unknown_business_type_returns_400(client, provisioner) -> None:
    provisioner.preview.side_effect = UnknownBusinessTypeError("Bakery")

    resp = client.post("/api/preview", json={"businessTypes": ["Bakery"]})

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_taxonomy"


def test_api_provision_returns_outcome_and_feedback(client, provisioner) -> None:
    """Default trigger runs provision with the requested force flag."""

    provisioner.provision.return_value = _outcome()

    resp = client.post(
        "/api/provision",
        json={
            "userId": "u1",
            "provider": "gmail",
            "businessTypes": ["HVAC"],
            "suppliers": [{"name": "Acme", "email": "orders@acme.test"}],
            "force": True,
        },
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    assert payload["outcome"]["labelMap"] == {"SERV": "Label_7"}
    assert payload["outcome"]["result"]["created"][0]["remoteId"] == "Label_7"
    assert payload["feedback"]["type"] == "success"

    args, kwargs = provisioner.provision.call_args
    assert args[:3] == ("u1", ProviderKind.GMAIL, ["HVAC"])
    assert args[3].suppliers[0].email == "orders@acme.test"
    assert kwargs == {"force": True}


@pytest.mark.parametrize(
    "trigger, method",
    [
        ("business_type_change", "on_business_type_change"),
        ("team_setup", "on_team_setup"),
        ("onboarding_complete", "on_onboarding_complete"),
    ],
)
def test_api_provision_dispatches_triggers(client, provisioner, trigger, method) -> None:
    getattr(provisioner, method).return_value = _outcome(skipped=True)

    resp = client.post(
        "/api/provision",
        json={
            "userId": "u1",
            "provider": "outlook",
            "businessTypes": ["HVAC"],
            "managers": ["Alice"],
            "trigger": trigger,
        },
    )

    assert resp.status_code == 200
    getattr(provisioner, method).assert_called_once_with(
        "u1", ProviderKind.OUTLOOK, ["HVAC"], Roster.from_names(["Alice"], [])
    )
    provisioner.provision.assert_not_called()


def test_api_provision_rejects_unknown_trigger(client, provisioner) -> None:
    resp = client.post(
        "/api/provision",
        json={"userId": "u1", "provider": "gmail", "trigger": "nightly"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_trigger"
    provisioner.provision.assert_not_called()


def test_api_provision_rejects_unknown_provider(client) -> None:
    resp = client.post("/api/provision", json={"userId": "u1", "provider": "yahoo"})
    assert resp.status_code == 422


@pytest.mark.parametrize(
    "error, status, code",
    [
        (ReconnectRequiredError(), 401, "reconnect_required"),
        (ForbiddenError("Access is denied"), 403, "forbidden"),
        (FetchIncompleteError("Could not enumerate gmail containers"), 502, "fetch_incomplete"),
    ],
)
def test_api_provision_maps_fatal_errors(client, provisioner, error, status, code) -> None:
    provisioner.provision.side_effect = error

    resp = client.post("/api/provision", json={"userId": "u1", "provider": "gmail"})

    assert resp.status_code == status
    payload = resp.json()
    assert payload["error"] == code
    assert payload["message"] == str(error)


def test_folder_health_returns_report(client, provisioner) -> None:
    provisioner.check_health.return_value = HealthReport(
        total_expected=4,
        total_found=3,
        missing_folders=["PROMO"],
        health_percentage=75.0,
        classifier_coverage=ClassifierCoverage(
            classifiable_folders=1,
            unclassifiable_folders=["Frank's Custom Folder"],
            total_folders=2,
            coverage_percentage=50.0,
        ),
    )

    resp = client.get(
        "/api/folder-health",
        params={"userId": "u1", "provider": "outlook", "businessType": ["HVAC", "Electrician"]},
    )

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["missingFolders"] == ["PROMO"]
    assert payload["healthPercentage"] == 75.0
    assert payload["classifierCoverage"]["unclassifiableFolders"] == ["Frank's Custom Folder"]
    provisioner.check_health.assert_called_once_with(
        "u1", ProviderKind.OUTLOOK, ["HVAC", "Electrician"]
    )


def test_folder_health_without_business_types(client, provisioner) -> None:
    provisioner.check_health.return_value = HealthReport()

    resp = client.get("/api/folder-health", params={"userId": "u1", "provider": "gmail"})

    assert resp.status_code == 200
    provisioner.check_health.assert_called_once_with("u1", ProviderKind.GMAIL, None)


def test_api_provision_without_gmail_credential_returns_401(monkeypatch, tmp_path) -> None:
    """The default provisioner asks for a reconnect when Gmail has no token."""

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RECORD_STORE_BACKEND", "memory")
    monkeypatch.delenv("GMAIL_ACCESS_TOKEN", raising=False)
    client = TestClient(create_app())

    resp = client.post(
        "/api/provision",
        json={"userId": "u1", "provider": "gmail", "businessTypes": ["HVAC"]},
    )

    assert resp.status_code == 401
    assert resp.json()["error"] == "reconnect_required"
