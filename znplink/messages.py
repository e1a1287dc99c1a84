"""Z-Stack command identifiers, NV items and binary payload layouts."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar

AF_DISCV_ROUTE = 0x20
AF_DEFAULT_RADIUS = 0x0F

NOT_STARTED_AUTOMATICALLY = 0x00
COORDINATOR_STARTED = 0x09


class Command(IntEnum):
    """Monitor-and-test command identifiers (type/subsystem byte, command byte)."""

    SYS_VERSION = 0x2102
    SYS_OSAL_NV_READ = 0x2108
    SYS_OSAL_NV_WRITE = 0x2109
    SYS_SET_TX_POWER = 0x2114
    AF_REGISTER = 0x2400
    AF_DATA_REQUEST = 0x2401
    AF_DATA_REQUEST_EXT = 0x2402
    AF_INTER_PAN_CTL = 0x2410
    ZDO_MGMT_PERMIT_JOIN_REQ = 0x2536
    ZDO_MSG_CB_REGISTER = 0x253E
    ZDO_STARTUP_FROM_APP = 0x2540
    ZDO_ADD_GROUP = 0x254B
    ZB_READ_CONFIGURATION = 0x2604
    ZB_WRITE_CONFIGURATION = 0x2605
    UTIL_GET_DEVICE_INFO = 0x2700
    APP_CNF_BDB_SET_CHANNEL = 0x2F08

    SYS_RESET_REQ = 0x4100
    SYS_RESET_IND = 0x4180
    AF_DATA_CONFIRM = 0x4480
    AF_INCOMING_MSG = 0x4481
    AF_INCOMING_MSG_EXT = 0x4482
    ZDO_MGMT_PERMIT_JOIN_RSP = 0x45B6
    ZDO_MGMT_NWK_UPDATE_RSP = 0x45B8
    ZDO_STATE_CHANGE_IND = 0x45C0
    ZDO_END_DEVICE_ANNCE_IND = 0x45C1
    ZDO_SRC_RTG_IND = 0x45C4
    ZDO_CONCENTRATOR_IND = 0x45C8
    ZDO_LEAVE_IND = 0x45C9
    ZDO_TC_DEV_IND = 0x45CA
    ZDO_PERMIT_JOIN_IND = 0x45CB
    ZDO_MSG_CB_INCOMING = 0x45FF
    APP_CNF_BDB_COMMISSIONING = 0x4F80


class NvItem(IntEnum):
    """Non-volatile memory item identifiers."""

    STARTUP_OPTION = 0x0003
    PRECFGKEY = 0x0062
    PRECFGKEYS_ENABLE = 0x0063
    PANID = 0x0083
    CHANLIST = 0x0084
    LOGICAL_TYPE = 0x0087
    ZDO_DIRECT_CB = 0x008F
    TCLK_TABLE = 0x0101


class AddressMode(IntEnum):
    """Destination address modes of extended data requests."""

    GROUP = 0x01
    SHORT = 0x02
    IEEE = 0x03


class ZStackVersion(Enum):
    """Firmware families that need different start-up handling."""

    ZSTACK_3X0 = "Z-Stack 3.x.0"
    ZSTACK_30X = "Z-Stack 3.0.x"
    ZSTACK_12X = "Z-Stack 1.2.x"

    @property
    def model_name(self) -> str:
        return self.value


def ieee_from_wire(data: bytes) -> bytes:
    """Turn a little-endian IEEE address from the wire into big-endian bytes."""
    if len(data) != 8:
        raise ValueError(f"IEEE address must be 8 bytes, got {len(data)}")
    return bytes(reversed(data))


def ieee_to_wire(address: bytes) -> bytes:
    """Turn a big-endian IEEE address into the little-endian wire form."""
    if len(address) != 8:
        raise ValueError(f"IEEE address must be 8 bytes, got {len(address)}")
    return bytes(reversed(address))


def _unpack(layout: struct.Struct, data: bytes, name: str) -> tuple:
    if len(data) < layout.size:
        raise ValueError(f"{name} needs at least {layout.size} bytes, got {len(data)}")
    return layout.unpack_from(data)


def _checked_length(data: bytes, limit: int, name: str) -> int:
    if len(data) > limit:
        raise ValueError(f"{name} is {len(data)} bytes long, at most {limit} allowed")
    return len(data)


@dataclass(frozen=True)
class VersionInfo:
    """Reply to the system version request."""

    transport: int
    product: int
    major: int
    minor: int
    patch: int
    build: int

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BBBBBI")

    @classmethod
    def unpack(cls, data: bytes) -> VersionInfo:
        return cls(*_unpack(cls.LAYOUT, data, "version reply"))

    @property
    def stack_version(self) -> ZStackVersion:
        if self.product == 0x01:
            return ZStackVersion.ZSTACK_3X0
        if self.product == 0x02:
            return ZStackVersion.ZSTACK_30X
        return ZStackVersion.ZSTACK_12X


@dataclass(frozen=True)
class DataRequest:
    """Unicast application data request."""

    network_address: int
    dst_endpoint_id: int
    src_endpoint_id: int
    cluster_id: int
    transaction_id: int
    payload: bytes = b""
    options: int = AF_DISCV_ROUTE
    radius: int = AF_DEFAULT_RADIUS

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HBBHBBBB")

    def pack(self) -> bytes:
        length = _checked_length(self.payload, 0xFF, "payload")
        return self.LAYOUT.pack(
            self.network_address,
            self.dst_endpoint_id,
            self.src_endpoint_id,
            self.cluster_id,
            self.transaction_id,
            self.options,
            self.radius,
            length,
        ) + self.payload


@dataclass(frozen=True)
class ExtendedRequest:
    """Extended data request addressed by group, short or IEEE address.

    ``dst_address`` is the numeric address; an IEEE address is the integer
    value of its big-endian bytes. When ``radius`` is not given it is doubled
    for requests that leave the local PAN.
    """

    address_mode: AddressMode
    dst_address: int
    dst_endpoint_id: int
    dst_pan_id: int
    src_endpoint_id: int
    cluster_id: int
    transaction_id: int
    payload: bytes = b""
    options: int = 0x00
    radius: int | None = None

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BQBHBHBBBH")

    def pack(self) -> bytes:
        length = _checked_length(self.payload, 0xFFFF, "payload")
        radius = self.radius
        if radius is None:
            radius = AF_DEFAULT_RADIUS * 2 if self.dst_pan_id else AF_DEFAULT_RADIUS
        return self.LAYOUT.pack(
            self.address_mode,
            self.dst_address,
            self.dst_endpoint_id,
            self.dst_pan_id,
            self.src_endpoint_id,
            self.cluster_id,
            self.transaction_id,
            self.options,
            radius,
            length,
        ) + self.payload


@dataclass(frozen=True)
class PermitJoinRequest:
    """Management permit-join request."""

    dst_address: int
    duration: int
    mode: int = 0x0F
    significance: int = 0x00

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BHBB")

    def pack(self) -> bytes:
        return self.LAYOUT.pack(self.mode, self.dst_address, self.duration, self.significance)


@dataclass(frozen=True)
class RegisterEndpointRequest:
    """Application endpoint registration with its cluster lists."""

    endpoint_id: int
    profile_id: int
    device_id: int
    in_clusters: tuple[int, ...] = ()
    out_clusters: tuple[int, ...] = ()
    version: int = 0x00
    latency: int = 0x00

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BHHBB")

    def pack(self) -> bytes:
        header = self.LAYOUT.pack(
            self.endpoint_id, self.profile_id, self.device_id, self.version, self.latency
        )
        return header + self._cluster_list(self.in_clusters) + self._cluster_list(self.out_clusters)

    @staticmethod
    def _cluster_list(clusters: tuple[int, ...]) -> bytes:
        if len(clusters) > 0xFF:
            raise ValueError(f"too many clusters: {len(clusters)}")
        return bytes([len(clusters)]) + b"".join(struct.pack("<H", c) for c in clusters)


@dataclass(frozen=True)
class AddGroupRequest:
    """Adds an endpoint to a group."""

    endpoint_id: int
    group_id: int
    name: bytes = b""

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BHB")

    def pack(self) -> bytes:
        length = _checked_length(self.name, 0xFF, "group name")
        return self.LAYOUT.pack(self.endpoint_id, self.group_id, length) + self.name


@dataclass(frozen=True)
class SetChannelRequest:
    """Sets the primary or secondary commissioning channel mask."""

    is_primary: bool
    channel_mask: int

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BI")

    def pack(self) -> bytes:
        return self.LAYOUT.pack(int(self.is_primary), self.channel_mask)


@dataclass(frozen=True)
class NvReadRequest:
    """Reads an NV item."""

    item_id: int
    offset: int = 0x00

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HB")

    def pack(self) -> bytes:
        return self.LAYOUT.pack(self.item_id, self.offset)


@dataclass(frozen=True)
class NvWriteRequest:
    """Writes an NV item."""

    item_id: int
    data: bytes
    offset: int = 0x00

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HBB")

    def pack(self) -> bytes:
        length = _checked_length(self.data, 0xFF, "NV item value")
        return self.LAYOUT.pack(self.item_id, self.offset, length) + self.data


@dataclass(frozen=True)
class WriteConfigurationRequest:
    """Writes a configuration item through the simple API."""

    item_id: int
    data: bytes

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BB")

    def pack(self) -> bytes:
        length = _checked_length(self.data, 0xFF, "configuration value")
        return self.LAYOUT.pack(self.item_id & 0xFF, length) + self.data


@dataclass(frozen=True)
class DataConfirm:
    """Confirmation of a data request."""

    status: int
    endpoint_id: int
    transaction_id: int

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BBB")

    @classmethod
    def unpack(cls, data: bytes) -> DataConfirm:
        return cls(*_unpack(cls.LAYOUT, data, "data confirm"))


@dataclass(frozen=True)
class IncomingMessage:
    """Application message received from a short address."""

    group_id: int
    cluster_id: int
    src_address: int
    src_endpoint_id: int
    dst_endpoint_id: int
    broadcast: int
    link_quality: int
    security: int
    timestamp: int
    transaction_id: int
    payload: bytes

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HHHBBBBBIBB")

    @classmethod
    def unpack(cls, data: bytes) -> IncomingMessage:
        fields = _unpack(cls.LAYOUT, data, "incoming message")
        start = cls.LAYOUT.size
        payload = bytes(data[start:start + fields[-1]])
        return cls(*fields[:-1], payload)


@dataclass(frozen=True)
class ExtendedMessage:
    """Application message received with an extended source address."""

    group_id: int
    cluster_id: int
    src_address_mode: int
    src_address: int
    src_endpoint_id: int
    src_pan_id: int
    dst_endpoint_id: int
    broadcast: int
    link_quality: int
    security: int
    timestamp: int
    transaction_id: int
    payload: bytes

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HHBQBHBBBBIBH")

    @classmethod
    def unpack(cls, data: bytes) -> ExtendedMessage:
        fields = _unpack(cls.LAYOUT, data, "extended message")
        start = cls.LAYOUT.size
        payload = bytes(data[start:start + fields[-1]])
        return cls(*fields[:-1], payload)

    @property
    def ieee_address(self) -> bytes:
        """Source address as big-endian IEEE bytes."""
        return self.src_address.to_bytes(8, "big")


@dataclass(frozen=True)
class ZdoMessage:
    """ZDO response delivered through the message callback."""

    src_address: int
    broadcast: int
    cluster_id: int
    security: int
    transaction_id: int
    dst_address: int
    payload: bytes

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<HBHBBH")

    @classmethod
    def unpack(cls, data: bytes) -> ZdoMessage:
        fields = _unpack(cls.LAYOUT, data, "ZDO message")
        return cls(*fields, bytes(data[cls.LAYOUT.size:]))


@dataclass(frozen=True)
class DeviceLeave:
    """Indication that a device left the network."""

    network_address: int
    ieee_address: bytes
    request: int
    remove: int
    rejoin: int

    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<H8sBBB")

    @classmethod
    def unpack(cls, data: bytes) -> DeviceLeave:
        network_address, ieee, request, remove, rejoin = _unpack(cls.LAYOUT, data, "leave indication")
        return cls(network_address, ieee_from_wire(ieee), request, remove, rejoin)