"""Tests for domain models."""

from hwsigner.models import (
    ConnectionStatus,
    Device,
    LockStatus,
    RequestStatus,
    RequestType,
    SigningPayload,
    SigningRequest,
    utcnow,
)


class TestDevice:
    def test_defaults(self) -> None:
        device = Device(id="ledger-1")
        assert device.connection_status is ConnectionStatus.DISCONNECTED
        assert device.lock_status is LockStatus.UNKNOWN
        assert device.supported_apps == []
        assert not device.is_ready

    def test_ready_requires_connected_and_unlocked(self) -> None:
        assert Device(
            id="a", connection_status=ConnectionStatus.CONNECTED, lock_status=LockStatus.UNLOCKED
        ).is_ready
        assert not Device(
            id="a", connection_status=ConnectionStatus.CONNECTED, lock_status=LockStatus.LOCKED
        ).is_ready
        assert not Device(
            id="a", connection_status=ConnectionStatus.CONNECTING, lock_status=LockStatus.UNLOCKED
        ).is_ready

    def test_enum_values_serialize(self) -> None:
        data = Device(id="a").model_dump(mode="json")
        assert data["connection_status"] == "disconnected"
        assert data["vendor"] == "other"


class TestSigningRequest:
    def test_terminal_states(self) -> None:
        assert not RequestStatus.PENDING.is_terminal
        assert RequestStatus.SIGNED.is_terminal
        assert RequestStatus.ERROR.is_terminal
        assert RequestStatus.CANCELLED.is_terminal

    def test_dispatched(self) -> None:
        request = SigningRequest(
            id=1,
            request_type=RequestType.MESSAGE,
            payload=SigningPayload(data=b"hello", summary="Sign in"),
            device_id="ledger-1",
            account_path="m/44'/60'/0'/0/0",
            account_address="0xabc",
        )
        assert request.status is RequestStatus.PENDING
        assert not request.dispatched
        assert request.model_copy(update={"dispatched_at": utcnow()}).dispatched
