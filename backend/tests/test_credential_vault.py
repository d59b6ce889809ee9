import httpx
import pytest
from fastapi import BackgroundTasks

from app.models_sqlalchemy.models import MarketplaceCredential
from app.services.bricklink_oauth import BrickLinkCredentials
from app.services.credential_vault import MASKED_VALUE, SYSTEM_CALLER, credential_vault
from app.services.marketplace_errors import ErrorCode, MarketplaceError
from app.services.marketplace_transport import BrickOwlCredentials
from app.utils import crypto


TENANT = "tenant-1"

BRICKLINK_FIELDS = {
    "consumer_key": "ck-123",
    "consumer_secret": "cs-456",
    "token_value": "tv-789",
    "token_secret": "ts-012",
}


def _row(db, provider):
    db.expire_all()
    return db.query(MarketplaceCredential).filter_by(tenant_id=TENANT, provider=provider).one_or_none()


def _client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_save_encrypts_each_field_and_issues_webhook_token(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)

    row = _row(db, "bricklink")
    assert row.validation_status == "pending"
    assert row.sync_enabled is False
    assert row.orders_sync_enabled is True
    assert row.webhook_status == "unconfigured"
    assert len(row.webhook_token) == 64

    for attribute in ("_bl_consumer_key", "_bl_consumer_secret", "_bl_token_value", "_bl_token_secret"):
        stored = getattr(row, attribute)
        assert crypto.is_encrypted(stored)
        assert "ck-123" not in stored
    assert row.bl_consumer_key == "ck-123"
    assert row.bl_token_secret == "ts-012"


def test_brickowl_credentials_get_no_webhook_token(db):
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})

    row = _row(db, "brickowl")
    assert row.webhook_token is None
    assert crypto.is_encrypted(row._bo_api_key)
    assert row.bo_api_key == "owl-key"


def test_save_rejects_missing_fields(db):
    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.save(db, TENANT, "bricklink", {"consumer_key": "ck", "token_value": "  "})

    assert exc_info.value.code == ErrorCode.VALIDATION.value
    assert exc_info.value.details["missing_fields"] == ["consumer_secret", "token_value", "token_secret"]
    assert _row(db, "bricklink") is None


def test_save_rejects_unknown_provider(db):
    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.save(db, TENANT, "etsy", {"api_key": "x"})
    assert exc_info.value.code == ErrorCode.VALIDATION.value


def test_resave_keeps_webhook_token_and_resets_validation(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    token = _row(db, "bricklink").webhook_token
    credential_vault.update_validation_status(db, TENANT, "bricklink", "success", "ok")

    credential_vault.save(db, TENANT, "bricklink", {**BRICKLINK_FIELDS, "consumer_key": "ck-new"})

    row = _row(db, "bricklink")
    assert row.webhook_token == token
    assert row.validation_status == "pending"
    assert row.validation_message is None
    assert row.bl_consumer_key == "ck-new"
    assert db.query(MarketplaceCredential).count() == 1


def test_save_schedules_connection_test(db):
    tasks = BackgroundTasks()
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"}, background_tasks=tasks)

    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].args == (TENANT, "brickowl")
    assert tasks.tasks[0].kwargs == {"caller_tenant_id": SYSTEM_CALLER}


def test_get_decrypted_returns_typed_credentials(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})

    bricklink = credential_vault.get_decrypted(db, TENANT, "bricklink", caller_tenant_id=SYSTEM_CALLER)
    brickowl = credential_vault.get_decrypted(db, TENANT, "brickowl", caller_tenant_id=TENANT)

    assert isinstance(bricklink, BrickLinkCredentials)
    assert bricklink.consumer_secret == "cs-456"
    assert isinstance(brickowl, BrickOwlCredentials)
    assert brickowl.api_key == "owl-key"


def test_get_decrypted_guards(db):
    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.get_decrypted(db, TENANT, "brickowl", caller_tenant_id=TENANT)
    assert exc_info.value.code == ErrorCode.CREDENTIALS_NOT_FOUND.value

    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})
    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.get_decrypted(db, TENANT, "brickowl", caller_tenant_id="someone-else")
    assert exc_info.value.code == ErrorCode.BUSINESS_ACCOUNT_MISMATCH.value

    with pytest.raises(TypeError):
        credential_vault.get_decrypted(db, TENANT, "brickowl")


def test_get_decrypted_rejects_undecryptable_values(db):
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})
    row = _row(db, "brickowl")
    row._bo_api_key = "ENC:v1:bm90LXJlYWxseS1jaXBoZXJ0ZXh0LWF0LWFsbA=="
    db.commit()

    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.get_decrypted(db, TENANT, "brickowl", caller_tenant_id=TENANT)
    assert exc_info.value.code == ErrorCode.INVALID_CREDENTIALS.value


def test_status_is_masked(db):
    assert credential_vault.get_status(db, TENANT, "bricklink").configured is False

    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    status = credential_vault.get_status(db, TENANT, "bricklink")

    assert status.configured is True
    assert status.webhook_status == "unconfigured"
    assert set(status.masked_fields) == set(BRICKLINK_FIELDS)
    assert all(value == MASKED_VALUE for value in status.masked_fields.values())
    assert "ck-123" not in status.model_dump_json()
    assert credential_vault.mask("anything") == MASKED_VALUE


def test_revoke_deletes_row(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    credential_vault.revoke(db, TENANT, "bricklink")

    assert _row(db, "bricklink") is None
    with pytest.raises(MarketplaceError) as exc_info:
        credential_vault.revoke(db, TENANT, "bricklink")
    assert exc_info.value.code == ErrorCode.CREDENTIALS_NOT_FOUND.value


def test_master_sync_switch_drives_sub_switches(db):
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})

    credential_vault.update_sync_settings(db, TENANT, "brickowl", sync_enabled=True)
    row = _row(db, "brickowl")
    assert (row.sync_enabled, row.orders_sync_enabled, row.inventory_sync_enabled) == (True, True, True)

    credential_vault.update_sync_settings(db, TENANT, "brickowl", inventory_sync_enabled=False)
    row = _row(db, "brickowl")
    assert (row.sync_enabled, row.orders_sync_enabled, row.inventory_sync_enabled) == (True, True, False)


def test_configured_providers_and_token_lookup(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)
    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})
    token = _row(db, "bricklink").webhook_token

    assert credential_vault.get_configured_providers(db, TENANT) == ["bricklink", "brickowl"]
    assert credential_vault.find_by_webhook_token(db, token).provider == "bricklink"
    assert credential_vault.find_by_webhook_token(db, "nope") is None
    assert credential_vault.find_by_webhook_token(db, "") is None


@pytest.mark.asyncio
async def test_connection_test_success_updates_status(db):
    """A successful read call marks the credentials as validated."""

    credential_vault.save(db, TENANT, "brickowl", {"api_key": "owl-key"})
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    result = await credential_vault.test_connection(TENANT, "brickowl", caller_tenant_id=TENANT, client_factory=_client_factory(handler))

    assert result.success is True
    assert result.correlation_id
    assert seen[0].url.path.endswith("/order/list")
    assert seen[0].url.params["key"] == "owl-key"
    row = _row(db, "brickowl")
    assert row.validation_status == "success"
    assert row.last_validated_at is not None


@pytest.mark.asyncio
async def test_connection_test_failure_is_recorded_not_raised(db):
    credential_vault.save(db, TENANT, "bricklink", BRICKLINK_FIELDS)

    def handler(request):
        assert request.headers["Authorization"].startswith("OAuth ")
        return httpx.Response(200, json={"meta": {"code": 401, "message": "BAD_OAUTH_REQUEST"}})

    result = await credential_vault.test_connection(TENANT, "bricklink", caller_tenant_id=TENANT, client_factory=_client_factory(handler))

    assert result.success is False
    assert result.error_code == ErrorCode.AUTH.value
    row = _row(db, "bricklink")
    assert row.validation_status == "failed"
    assert "BAD_OAUTH_REQUEST" in row.validation_message

    response = credential_vault.to_test_response("bricklink", result)
    assert response.success is False
    assert response.error_code == "AUTH"


@pytest.mark.asyncio
async def test_connection_test_without_credentials(db):
    result = await credential_vault.test_connection(TENANT, "brickowl", caller_tenant_id=TENANT)

    assert result.success is False
    assert result.error_code == ErrorCode.CREDENTIALS_NOT_FOUND.value
