"""Device session manager

Owns the lifecycle of every attached reader and hands out exclusive leases.
A device serves one logical operation at a time: a second ``acquire`` on a
leased device fails immediately with DEVICE_BUSY, without touching hardware.
Queuing is left to callers.

Lease revocation:
- hardware removal revokes the outstanding lease with DEVICE_DISCONNECTED
- an operation that runs longer than the device operation timeout is revoked
  with DEVICE_TIMEOUT (checked on every lease use and by ``revoke_expired``)
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import DEVICE_OPERATION_TIMEOUT_MS
from .errors import CaptureCancelled, ErrorCode, FingerprintError
from .logger import log_device, log_error
from .models import Device, DeviceInfo, DeviceState
from .sdk import FingerprintReader

RevocationListener = Callable[["DeviceLease", FingerprintError], None]
StateListener = Callable[[Device, DeviceState, DeviceState], None]


class LeaseStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    REVOKED = "revoked"


class DeviceLease:
    """Exclusive right to drive one reader.

    Attributes:
        lease_id: Unique lease token
        device_id: Leased reader
        reader: Driver handle, valid only while the lease is active
        cancel_event: Set when the lease ends so blocking waits can abort
    """

    def __init__(
        self,
        manager: "DeviceManager",
        device_id: str,
        reader: FingerprintReader,
        timeout_s: float,
    ) -> None:
        self.lease_id = uuid.uuid4().hex
        self.device_id = device_id
        self.reader = reader
        self.cancel_event = threading.Event()
        self.acquired_at = manager.clock()
        self.status = LeaseStatus.ACTIVE
        self.revocation: Optional[FingerprintError] = None
        self._manager = manager
        self._timeout_s = timeout_s
        self._deadline = self.acquired_at + timeout_s

    @property
    def active(self) -> bool:
        return self.status == LeaseStatus.ACTIVE

    @property
    def deadline(self) -> float:
        return self._deadline

    def touch(self, budget_s: float = 0.0) -> None:
        """Restart the operation timeout before a new hardware operation.

        ``budget_s`` is the time the operation is expected to block (e.g. a
        wait-for-finger bound); the timeout counts from the end of that budget.
        """
        self.ensure_active()
        self._deadline = self._manager.clock() + budget_s + self._timeout_s

    def ensure_active(self) -> None:
        """Raise if the lease can no longer be used.

        Raises:
            CaptureCancelled: The holder (or a stop request) released the lease
            FingerprintError: The lease was revoked (disconnect / timeout)
        """
        self._manager.check_lease(self)

    def __repr__(self) -> str:
        return f"DeviceLease(device_id={self.device_id!r}, status={self.status.value})"


class DeviceManager:
    """Registry of readers plus the one-lease-per-device invariant."""

    def __init__(
        self,
        operation_timeout_ms: int = DEVICE_OPERATION_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if operation_timeout_ms <= 0:
            raise ValueError(f"operation_timeout_ms must be positive, got {operation_timeout_ms}")

        self.clock = clock
        self._timeout_s = operation_timeout_ms / 1000.0
        self._lock = threading.RLock()
        self._devices: Dict[str, Device] = {}
        self._readers: Dict[str, FingerprintReader] = {}
        self._leases: Dict[str, DeviceLease] = {}
        self._revocation_listeners: List[RevocationListener] = []
        self._state_listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Listeners

    def add_revocation_listener(self, listener: RevocationListener) -> None:
        self._revocation_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ------------------------------------------------------------------
    # Enumeration / hot-plug

    def register(self, device_id: str, reader: FingerprintReader) -> Device:
        """Open a newly enumerated reader and make it available for leases.

        Raises:
            FingerprintError: DEVICE_INIT_FAILED if the reader cannot be opened
        """
        try:
            info = dataclasses.replace(reader.open(), device_id=device_id)
        except FingerprintError:
            raise
        except Exception as exc:
            placeholder = DeviceInfo(device_id=device_id, serial_number="unknown")
            with self._lock:
                device = Device(info=placeholder, state=DeviceState.ERROR, last_error=str(exc))
                self._devices[device_id] = device
                self._readers[device_id] = reader
            log_device(device_id, "INIT_FAILED", {"error": exc}, level=logging.ERROR)
            raise FingerprintError(
                ErrorCode.DEVICE_INIT_FAILED,
                f"Failed to open device {device_id}: {exc}",
                {"deviceId": device_id},
            ) from exc

        with self._lock:
            previous = self._devices.get(device_id)
            old_state = previous.state if previous else DeviceState.DISCONNECTED
            device = Device(info=info, state=DeviceState.CONNECTED)
            self._devices[device_id] = device
            self._readers[device_id] = reader

        log_device(device_id, "REGISTERED", {"serial": info.serial_number, "model": info.model})
        self._notify_state(device, old_state, DeviceState.CONNECTED)
        return device

    def remove(self, device_id: str) -> Device:
        """Handle USB removal: disconnect the device and revoke its lease."""
        with self._lock:
            device = self._get_locked(device_id)
            old_state = device.state
            device.state = DeviceState.DISCONNECTED
            device.lease_id = None
            lease = self._leases.pop(device_id, None)
            reader = self._readers.get(device_id)

        error = FingerprintError(
            ErrorCode.DEVICE_DISCONNECTED,
            f"Device {device_id} was disconnected",
            {"deviceId": device_id},
        )
        if lease is not None:
            self._revoke(lease, error)

        if reader is not None:
            try:
                reader.close()
            except Exception as exc:
                log_error(exc, context=f"close_device:{device_id}")

        log_device(device_id, "REMOVED", {"had_lease": lease is not None}, level=logging.WARNING)
        self._notify_state(device, old_state, DeviceState.DISCONNECTED)
        return device

    def reconnect(self, device_id: str) -> Device:
        """Re-open a previously removed reader."""
        with self._lock:
            device = self._get_locked(device_id)
            if device.state not in (DeviceState.DISCONNECTED, DeviceState.ERROR):
                return device
            reader = self._readers[device_id]
        return self.register(device_id, reader)

    # ------------------------------------------------------------------
    # Queries

    def get(self, device_id: str) -> Device:
        with self._lock:
            return self._get_locked(device_id)

    def list_devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices.values())

    def lease_for(self, device_id: str) -> Optional[DeviceLease]:
        with self._lock:
            return self._leases.get(device_id)

    # ------------------------------------------------------------------
    # Leases

    def acquire(self, device_id: str) -> DeviceLease:
        """Take the exclusive lease on a device.

        Raises:
            FingerprintError: DEVICE_NOT_FOUND, DEVICE_BUSY, DEVICE_DISCONNECTED
                or DEVICE_INIT_FAILED
        """
        with self._lock:
            device = self._get_locked(device_id)
            details = {"deviceId": device_id}

            if device.state == DeviceState.DISCONNECTED:
                raise FingerprintError(ErrorCode.DEVICE_DISCONNECTED, details=details)
            if device.state == DeviceState.ERROR:
                raise FingerprintError(ErrorCode.DEVICE_INIT_FAILED, details=details)
            if device.state == DeviceState.BUSY or device_id in self._leases:
                raise FingerprintError(ErrorCode.DEVICE_BUSY, details=details)

            lease = DeviceLease(self, device_id, self._readers[device_id], self._timeout_s)
            self._leases[device_id] = lease
            device.state = DeviceState.BUSY
            device.lease_id = lease.lease_id

        log_device(device_id, "ACQUIRED", {"lease": lease.lease_id})
        self._notify_state(device, DeviceState.CONNECTED, DeviceState.BUSY)
        return lease

    def release(self, lease: DeviceLease) -> bool:
        """Give a lease back. Releasing an ended lease is a no-op."""
        with self._lock:
            if lease.status != LeaseStatus.ACTIVE:
                return False
            lease.status = LeaseStatus.RELEASED
            lease.cancel_event.set()

            device = self._devices.get(lease.device_id)
            if self._leases.get(lease.device_id) is lease:
                del self._leases[lease.device_id]
                if device is not None and device.state == DeviceState.BUSY:
                    device.state = DeviceState.CONNECTED
                    device.lease_id = None
                else:
                    device = None
            else:
                device = None

        log_device(lease.device_id, "RELEASED", {"lease": lease.lease_id})
        if device is not None:
            self._notify_state(device, DeviceState.BUSY, DeviceState.CONNECTED)
        return True

    def check_lease(self, lease: DeviceLease) -> None:
        if lease.status == LeaseStatus.RELEASED:
            raise CaptureCancelled(f"Lease on {lease.device_id} was released")
        if lease.status == LeaseStatus.REVOKED:
            raise lease.revocation

        if self.clock() > lease.deadline:
            self._expire(lease)
            if lease.status == LeaseStatus.RELEASED:
                raise CaptureCancelled(f"Lease on {lease.device_id} was released")
            raise lease.revocation

    def revoke_expired(self, now: Optional[float] = None) -> List[DeviceLease]:
        """Revoke every lease whose current operation overran the timeout."""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [lease for lease in self._leases.values() if now > lease.deadline]

        for lease in expired:
            self._expire(lease)
        return expired

    # ------------------------------------------------------------------
    # Internals

    def _get_locked(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise FingerprintError(ErrorCode.DEVICE_NOT_FOUND, details={"deviceId": device_id})
        return device

    def _expire(self, lease: DeviceLease) -> None:
        with self._lock:
            if lease.status != LeaseStatus.ACTIVE:
                return
            device = self._devices.get(lease.device_id)
            if self._leases.get(lease.device_id) is lease:
                del self._leases[lease.device_id]
                if device is not None and device.state == DeviceState.BUSY:
                    device.state = DeviceState.CONNECTED
                    device.lease_id = None

        error = FingerprintError(
            ErrorCode.DEVICE_TIMEOUT,
            f"Operation on {lease.device_id} exceeded {self._timeout_s:.1f}s",
            {"deviceId": lease.device_id, "timeoutMs": int(self._timeout_s * 1000)},
        )
        self._revoke(lease, error)
        if device is not None:
            self._notify_state(device, DeviceState.BUSY, device.state)

    def _revoke(self, lease: DeviceLease, error: FingerprintError) -> None:
        with self._lock:
            if lease.status != LeaseStatus.ACTIVE:
                return
            lease.status = LeaseStatus.REVOKED
            lease.revocation = error
            lease.cancel_event.set()

        log_device(lease.device_id, "REVOKED", {"lease": lease.lease_id, "reason": error.name},
                   level=logging.WARNING)
        for listener in list(self._revocation_listeners):
            try:
                listener(lease, error)
            except Exception as exc:
                log_error(exc, context=f"revocation_listener:{lease.device_id}")

    def _notify_state(self, device: Device, old: DeviceState, new: DeviceState) -> None:
        if old == new:
            return
        for listener in list(self._state_listeners):
            try:
                listener(device, old, new)
            except Exception as exc:
                log_error(exc, context=f"state_listener:{device.device_id}")
