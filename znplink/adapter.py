"""Z-Stack network processor adapter: request/reply exchange and network start-up."""

from __future__ import annotations

import logging
import struct
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from .frame import SKIP_BOOTLOADER, FrameDecoder, encode_frame
from .messages import (
    COORDINATOR_STARTED,
    NOT_STARTED_AUTOMATICALLY,
    AddGroupRequest,
    AddressMode,
    Command,
    DataConfirm,
    DataRequest,
    DeviceLeave,
    ExtendedMessage,
    ExtendedRequest,
    IncomingMessage,
    NvItem,
    NvReadRequest,
    NvWriteRequest,
    PermitJoinRequest,
    RegisterEndpointRequest,
    SetChannelRequest,
    VersionInfo,
    WriteConfigurationRequest,
    ZdoMessage,
    ZStackVersion,
    ieee_from_wire,
)

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0
RESET_DELAY = 0.1

PERMIT_JOIN_BROADCAST_ADDRESS = 0xFFFC
GREEN_POWER_GROUP = 0x0B84
GREEN_POWER_ENDPOINT = 0xF2
INTER_PAN_ENDPOINT = 0x0C
INTER_PAN_DST_ENDPOINT = 0xFE
INTER_PAN_PAN_ID = 0xFFFF
BROADCAST_ADDRESS = 0xFFFF

ZDO_CALLBACK_CLUSTERS = (0x0002, 0x0004, 0x0005, 0x0021, 0x0022, 0x0031, 0x0034)

_STARTUP_FAILED = 0x02
_IEEE_ADDRESS_MODE = 0x03

_IGNORED_INDICATIONS = frozenset(
    {
        Command.ZDO_MGMT_PERMIT_JOIN_RSP,
        Command.ZDO_MGMT_NWK_UPDATE_RSP,
        Command.ZDO_SRC_RTG_IND,
        Command.ZDO_CONCENTRATOR_IND,
        Command.ZDO_TC_DEV_IND,
        Command.ZDO_PERMIT_JOIN_IND,
    }
)

_ANNOUNCE = struct.Struct("<H8s")


class ZStackError(Exception):
    """The adapter refused or failed a request."""


class RequestTimeout(ZStackError):
    """No reply arrived in time."""


class Transport(Protocol):
    """Byte link to the adapter."""

    def write(self, data: bytes) -> None: ...

    def read(self, timeout: float) -> bytes: ...


class AdapterListener(Protocol):
    """Receiver of the events the adapter reports."""

    def request_finished(self, transaction_id: int, status: int) -> None: ...

    def zcl_message_received(
        self, network_address: int, endpoint_id: int, cluster_id: int, link_quality: int, payload: bytes
    ) -> None: ...

    def raw_message_received(
        self, ieee_address: bytes, cluster_id: int, link_quality: int, payload: bytes
    ) -> None: ...

    def zdo_message_received(self, network_address: int, cluster_id: int, payload: bytes) -> None: ...

    def device_joined(self, ieee_address: bytes, network_address: int) -> None: ...

    def device_left(self, ieee_address: bytes) -> None: ...

    def coordinator_ready(self) -> None: ...


@dataclass(frozen=True)
class Endpoint:
    """An application endpoint registered on the coordinator."""

    endpoint_id: int
    profile_id: int
    device_id: int
    in_clusters: tuple[int, ...] = ()
    out_clusters: tuple[int, ...] = ()

    @property
    def register_request(self) -> RegisterEndpointRequest:
        return RegisterEndpointRequest(
            self.endpoint_id,
            self.profile_id,
            self.device_id,
            tuple(self.in_clusters),
            tuple(self.out_clusters),
        )


@dataclass(frozen=True)
class NetworkConfig:
    """Network parameters the adapter must hold."""

    network_key: bytes
    default_key: bytes
    channel: int = 11
    pan_id: int = 0x1A62
    power: int = 10
    permit_join_address: int = 0x0000
    write: bool = False

    def __post_init__(self) -> None:
        if len(self.network_key) != 16:
            raise ValueError("network key must be 16 bytes")
        if len(self.default_key) != 16:
            raise ValueError("default key must be 16 bytes")
        if not 0 <= self.channel <= 31:
            raise ValueError(f"channel {self.channel} out of range")
        if not 0 <= self.pan_id <= 0xFFFF:
            raise ValueError(f"PAN ID 0x{self.pan_id:x} out of range")

    @property
    def channel_mask(self) -> int:
        return 1 << self.channel

    def nv_items(self) -> dict[int, bytes]:
        """NV items and the values they must hold, in item order."""
        items = {
            NvItem.PRECFGKEY: bytes(self.network_key),
            NvItem.PRECFGKEYS_ENABLE: b"\x01",
            NvItem.PANID: self.pan_id.to_bytes(2, "little"),
            NvItem.CHANLIST: self.channel_mask.to_bytes(4, "little"),
            NvItem.LOGICAL_TYPE: b"\x00",
            NvItem.ZDO_DIRECT_CB: b"\x01",
        }
        return dict(sorted(items.items()))


def _status(reply: bytes) -> int:
    return reply[0] if reply else 0xFF


class ZStackAdapter:
    """Drives a Z-Stack coordinator over a byte transport."""

    def __init__(
        self,
        transport: Transport,
        config: NetworkConfig,
        listener: AdapterListener | None = None,
        endpoints: Iterable[Endpoint] = (),
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.config = config
        self.listener = listener
        self.endpoints = {ep.endpoint_id: ep for ep in sorted(endpoints, key=lambda ep: ep.endpoint_id)}
        self.timeout = timeout
        self.reset_delay = RESET_DELAY

        self.version: ZStackVersion | None = None
        self.status = 0
        self.clear = False
        self.ieee_address: bytes | None = None
        self.manufacturer_name: str | None = None
        self.firmware: str | None = None

        self._decoder = FrameDecoder()
        self._pending: int | None = None
        self._reply: bytes | None = None

    @property
    def model_name(self) -> str | None:
        return self.version.model_name if self.version else None

    @property
    def _legacy(self) -> bool:
        return self.version is ZStackVersion.ZSTACK_12X

    # -- link ---------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Take bytes from the link and handle every complete packet."""
        for frame in self._decoder.feed(data):
            try:
                self.handle_packet(frame.command, frame.data)
            except ValueError as error:
                log.warning("malformed packet 0x%04x: %s", frame.command, error)

    def send_request(self, command: int, data: bytes = b"") -> bytes:
        """Send a synchronous request and return the data of its reply."""
        log.debug("--> 0x%04x %s", command, data.hex(":"))
        deadline = time.monotonic() + self.timeout
        self._pending = command
        self._reply = None
        self.transport.write(encode_frame(command, data))

        while self._reply is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._pending = None
                raise RequestTimeout(f"no reply to request 0x{command:04x}")
            chunk = self.transport.read(remaining)
            if chunk:
                self.feed(chunk)

        reply, self._reply, self._pending = self._reply, None, None
        return reply

    def _request(self, command: int, data: bytes, failure: str) -> bytes:
        reply = self.send_request(command, data)
        if _status(reply):
            raise ZStackError(f"{failure} (status 0x{_status(reply):02x})")
        return reply

    def _notify(self, event: str, *args) -> None:
        if self.listener is not None:
            getattr(self.listener, event)(*args)

    # -- incoming packets ---------------------------------------------------

    def handle_packet(self, command: int, data: bytes) -> None:
        """Act on one decoded packet."""
        log.debug("<-- 0x%04x %s", command, data.hex(":"))

        if command & 0x2000:
            if self._pending is not None and (command ^ 0x4000) == self._pending:
                self._reply = bytes(data)
            return

        if command in _IGNORED_INDICATIONS:
            return

        if command == Command.SYS_RESET_IND:
            try:
                self.start_coordinator()
            except ZStackError as error:
                log.warning("coordinator startup failed: %s", error)

        elif command == Command.AF_DATA_CONFIRM:
            message = DataConfirm.unpack(data)
            self._notify("request_finished", message.transaction_id, message.status)

        elif command == Command.AF_INCOMING_MSG:
            message = IncomingMessage.unpack(data)
            self._notify(
                "zcl_message_received",
                message.src_address,
                message.src_endpoint_id,
                message.cluster_id,
                message.link_quality,
                message.payload,
            )

        elif command == Command.AF_INCOMING_MSG_EXT:
            message = ExtendedMessage.unpack(data)
            if message.src_address_mode != _IEEE_ADDRESS_MODE:
                log.warning("unsupported extended message address mode 0x%02x", message.src_address_mode)
                return
            self._notify(
                "raw_message_received",
                message.ieee_address,
                message.cluster_id,
                message.link_quality,
                message.payload,
            )

        elif command == Command.ZDO_STATE_CHANGE_IND:
            if len(data) == 1:
                self.status = data[0]
            if self._legacy and self.status == COORDINATOR_STARTED:
                self._notify("coordinator_ready")

        elif command == Command.ZDO_END_DEVICE_ANNCE_IND:
            if len(data) < 2 + _ANNOUNCE.size:
                raise ValueError("device announce too short")
            network_address, ieee = _ANNOUNCE.unpack_from(data, 2)
            self._notify("device_joined", ieee_from_wire(ieee), network_address)

        elif command == Command.ZDO_LEAVE_IND:
            self._notify("device_left", DeviceLeave.unpack(data).ieee_address)

        elif command == Command.ZDO_MSG_CB_INCOMING:
            message = ZdoMessage.unpack(data)
            if not message.payload:
                raise ValueError("ZDO message without payload")
            self._notify("request_finished", message.transaction_id, message.payload[0])
            self._notify("zdo_message_received", message.src_address, message.cluster_id, message.payload)

        elif command == Command.APP_CNF_BDB_COMMISSIONING:
            if len(data) < 3:
                raise ValueError("commissioning notification too short")
            if data[2]:
                return
            if self.status == NOT_STARTED_AUTOMATICALLY:
                log.warning("network not started, PAN ID collision detected")
            elif self.status == COORDINATOR_STARTED:
                self._notify("coordinator_ready")

        else:
            log.debug("unrecognized Z-Stack command 0x%04x with data %s", command, data.hex(":") or "(empty)")

    # -- data requests ------------------------------------------------------

    def unicast_request(self, transaction_id, network_address, src_endpoint_id, dst_endpoint_id, cluster_id, payload):
        request = DataRequest(network_address, dst_endpoint_id, src_endpoint_id, cluster_id, transaction_id, payload)
        self._request(Command.AF_DATA_REQUEST, request.pack(), "unicast request failed")

    def multicast_request(self, transaction_id, group_id, src_endpoint_id, dst_endpoint_id, cluster_id, payload):
        self._extended_request(
            transaction_id, AddressMode.GROUP, group_id, dst_endpoint_id, 0x0000, src_endpoint_id, cluster_id, payload
        )

    def unicast_inter_pan_request(self, transaction_id, ieee_address, cluster_id, payload):
        if len(ieee_address) != 8:
            raise ValueError(f"IEEE address must be 8 bytes, got {len(ieee_address)}")
        self._extended_request(
            transaction_id,
            AddressMode.IEEE,
            int.from_bytes(ieee_address, "big"),
            INTER_PAN_DST_ENDPOINT,
            INTER_PAN_PAN_ID,
            INTER_PAN_ENDPOINT,
            cluster_id,
            payload,
        )

    def broadcast_inter_pan_request(self, transaction_id, cluster_id, payload):
        self._extended_request(
            transaction_id,
            AddressMode.SHORT,
            BROADCAST_ADDRESS,
            INTER_PAN_DST_ENDPOINT,
            INTER_PAN_PAN_ID,
            INTER_PAN_ENDPOINT,
            cluster_id,
            payload,
        )

    def _extended_request(self, transaction_id, mode, address, dst_endpoint_id, dst_pan_id, src_endpoint_id,
                          cluster_id, payload):
        request = ExtendedRequest(
            mode, address, dst_endpoint_id, dst_pan_id, src_endpoint_id, cluster_id, transaction_id, payload
        )
        self._request(Command.AF_DATA_REQUEST_EXT, request.pack(), "extended request failed")

    def set_inter_pan_channel(self, channel):
        self._request(
            Command.AF_INTER_PAN_CTL, bytes([0x01, channel]), f"set Inter-PAN channel {channel} request failed"
        )

    def reset_inter_pan_channel(self):
        """Return to the network channel; a failure is only logged."""
        try:
            self._request(Command.AF_INTER_PAN_CTL, b"\x00", "reset Inter-PAN request failed")
        except ZStackError as error:
            log.warning("%s", error)

    def permit_join(self, enabled):
        request = PermitJoinRequest(
            self.config.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS,
            0xF0 if enabled else 0x00,
        )
        self._request(Command.ZDO_MGMT_PERMIT_JOIN_REQ, request.pack(), "set permit join request failed")

    # -- configuration ------------------------------------------------------

    def write_nv_item(self, item_id, data):
        self._request(
            Command.SYS_OSAL_NV_WRITE,
            NvWriteRequest(item_id, data).pack(),
            f"NV item 0x{item_id:04x} write request failed",
        )

    def write_configuration(self, item_id, data):
        self._request(
            Command.ZB_WRITE_CONFIGURATION,
            WriteConfigurationRequest(item_id, data).pack(),
            f"NV item 0x{item_id:04x} write request failed",
        )

    def _read_item(self, item_id: int) -> tuple[int, bytes]:
        if self._legacy and item_id == NvItem.PRECFGKEY:
            reply = self.send_request(Command.ZB_READ_CONFIGURATION, bytes([item_id & 0xFF]))
            return _status(reply), reply[3:]
        reply = self.send_request(Command.SYS_OSAL_NV_READ, NvReadRequest(item_id).pack())
        return _status(reply), reply[2:]

    def _write_item(self, item_id: int, value: bytes) -> None:
        if self._legacy and item_id == NvItem.PRECFGKEY:
            self.write_configuration(item_id, value)
            self.write_nv_item(NvItem.TCLK_TABLE, b"\xff" * 8 + self.config.default_key + b"\x00" * 8)
        else:
            self.write_nv_item(item_id, value)
        log.warning("NV item 0x%04x value set to %s", item_id, value.hex(":"))

    def start_coordinator(self):
        """Check or rewrite the adapter configuration and start the network.

        When stored values differ from the configuration and writing is
        allowed, the adapter is told to clear its state and is reset; the
        network is then formed when it reports back.
        """
        info = VersionInfo.unpack(self.send_request(Command.SYS_VERSION))
        self.version = info.stack_version

        if not self.clear:
            self.manufacturer_name = "Texas Instruments"
            self.firmware = str(info.build)
            log.info("adapter type: %s (%s)", self.model_name, self.firmware)

            reply = self._request(Command.UTIL_GET_DEVICE_INFO, b"", "device information request failed")
            self.ieee_address = ieee_from_wire(reply[1:9])

            for item_id, expected in self.config.nv_items().items():
                status, value = self._read_item(item_id)
                if status == 0 and value == expected:
                    continue
                log.warning(
                    "NV item 0x%04x value %s doesn't match configuration value %s",
                    item_id, value.hex(":") or "(empty)", expected.hex(":"),
                )
                if not self.config.write:
                    raise ZStackError("adapter configuration can't be changed, write protection enabled")
                try:
                    self.write_nv_item(NvItem.STARTUP_OPTION, b"\x03")
                except ZStackError as error:
                    log.warning("%s", error)
                self.clear = True
                self.soft_reset()
                return
        else:
            log.info("starting new network...")
            self.clear = False
            for item_id, value in self.config.nv_items().items():
                self._write_item(item_id, value)

        if not self._legacy:
            self._request(
                Command.APP_CNF_BDB_SET_CHANNEL,
                SetChannelRequest(True, self.config.channel_mask).pack(),
                "set primary channel request failed",
            )
            self._request(
                Command.APP_CNF_BDB_SET_CHANNEL,
                SetChannelRequest(False, 0).pack(),
                "set secondary channel request failed",
            )

        for cluster_id in ZDO_CALLBACK_CLUSTERS:
            self.send_request(Command.ZDO_MSG_CB_REGISTER, (cluster_id | 0x8000).to_bytes(2, "little"))

        for endpoint_id, endpoint in self.endpoints.items():
            try:
                self._request(Command.AF_REGISTER, endpoint.register_request.pack(), "register request failed")
            except ZStackError as error:
                log.warning("endpoint 0x%02x: %s", endpoint_id, error)
                continue
            log.info("endpoint 0x%02x registered successfully", endpoint_id)

        self._request(
            Command.AF_INTER_PAN_CTL, bytes([0x02, INTER_PAN_ENDPOINT]), "set Inter-PAN endpoint request failed"
        )

        try:
            self._request(
                Command.ZDO_ADD_GROUP,
                AddGroupRequest(GREEN_POWER_ENDPOINT, GREEN_POWER_GROUP).pack(),
                "add GP group request failed",
            )
        except ZStackError as error:
            log.warning("%s", error)

        try:
            self._request(Command.SYS_SET_TX_POWER, bytes([self.config.power & 0xFF]), "set TX power request failed")
        except ZStackError as error:
            log.warning("%s", error)

        try:
            reply = self.send_request(Command.ZDO_STARTUP_FROM_APP, b"\x00\x00")
            failed = _status(reply) == _STARTUP_FAILED
        except RequestTimeout:
            failed = True

        if failed and not (self._legacy and self.status == COORDINATOR_STARTED):
            raise ZStackError("startup request failed")

    def soft_reset(self):
        """Skip the bootloader and ask the adapter to restart."""
        self.transport.write(bytes([SKIP_BOOTLOADER]))
        time.sleep(self.reset_delay)
        self.transport.write(encode_frame(Command.SYS_RESET_REQ, b"\x01"))