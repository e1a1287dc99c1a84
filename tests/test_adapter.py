import struct

import pytest

from znplink.adapter import (
    GREEN_POWER_GROUP,
    PERMIT_JOIN_BROADCAST_ADDRESS,
    ZDO_CALLBACK_CLUSTERS,
    Endpoint,
    NetworkConfig,
    RequestTimeout,
    ZStackAdapter,
    ZStackError,
)
from znplink.frame import PACKET_FLAG, SKIP_BOOTLOADER, encode_frame
from znplink.messages import (
    AF_DEFAULT_RADIUS,
    COORDINATOR_STARTED,
    AddressMode,
    Command,
    DataRequest,
    ExtendedRequest,
    NvItem,
    PermitJoinRequest,
    VersionInfo,
    ZStackVersion,
    ieee_to_wire,
)

IEEE = bytes.fromhex("00124b0000000001")
NETWORK_KEY = bytes(range(16))
DEFAULT_KEY = bytes(range(16, 32))


def make_config(**kwargs):
    return NetworkConfig(network_key=NETWORK_KEY, default_key=DEFAULT_KEY, **kwargs)


class Recorder:
    def __init__(self):
        self.events = []

    def request_finished(self, transaction_id, status):
        self.events.append(("finished", transaction_id, status))

    def zcl_message_received(self, network_address, endpoint_id, cluster_id, link_quality, payload):
        self.events.append(("zcl", network_address, endpoint_id, cluster_id, link_quality, payload))

    def raw_message_received(self, ieee_address, cluster_id, link_quality, payload):
        self.events.append(("raw", ieee_address, cluster_id, link_quality, payload))

    def zdo_message_received(self, network_address, cluster_id, payload):
        self.events.append(("zdo", network_address, cluster_id, payload))

    def device_joined(self, ieee_address, network_address):
        self.events.append(("joined", ieee_address, network_address))

    def device_left(self, ieee_address):
        self.events.append(("left", ieee_address))

    def coordinator_ready(self):
        self.events.append(("ready",))


class FakeTransport:
    def __init__(self, responder=None):
        self.written = []
        self.incoming = bytearray()
        self.responder = responder

    def write(self, data):
        self.written.append(bytes(data))
        if self.responder is None or data[0] != PACKET_FLAG:
            return
        command = int.from_bytes(data[2:4], "big")
        if not command & 0x2000:
            return
        for reply in self.responder(command, bytes(data[4:-1])):
            self.incoming += reply

    def read(self, timeout):
        chunk = bytes(self.incoming)
        self.incoming.clear()
        return chunk

    def commands(self):
        return [int.from_bytes(w[2:4], "big") for w in self.written if w[0] == PACKET_FLAG]


def ok_responder(status=0):
    def respond(command, payload):
        return [encode_frame(command ^ 0x4000, bytes([status]))]
    return respond


def coordinator_responder(config, product=0x01, overrides=None, startup_status=0):
    items = config.nv_items()
    overrides = overrides or {}

    def respond(command, payload):
        if command == Command.SYS_VERSION:
            data = VersionInfo.LAYOUT.pack(2, product, 2, 7, 1, 20230507)
        elif command == Command.UTIL_GET_DEVICE_INFO:
            data = b"\x00" + ieee_to_wire(IEEE) + b"\x00\x00"
        elif command == Command.SYS_OSAL_NV_READ:
            item = int.from_bytes(payload[:2], "little")
            value = overrides.get(item, items[item])
            data = bytes([0, len(value)]) + value
        elif command == Command.ZB_READ_CONFIGURATION:
            item = payload[0]
            value = overrides.get(item, items[item])
            data = bytes([0, item, len(value)]) + value
        elif command == Command.ZDO_STARTUP_FROM_APP:
            data = bytes([startup_status])
        else:
            data = b"\x00"
        return [encode_frame(command ^ 0x4000, data)]

    return respond


def make_adapter(responder=None, config=None, endpoints=(), timeout=1.0):
    transport = FakeTransport(responder)
    listener = Recorder()
    adapter = ZStackAdapter(transport, config or make_config(), listener, endpoints, timeout)
    adapter.reset_delay = 0
    return adapter, transport, listener


def test_nv_items_values_and_order():
    config = make_config(channel=11, pan_id=0x1A62)
    items = config.nv_items()
    assert list(items) == sorted(items)
    assert items[NvItem.PRECFGKEY] == NETWORK_KEY
    assert items[NvItem.PANID] == b"\x62\x1a"
    assert items[NvItem.CHANLIST] == b"\x00\x08\x00\x00"
    assert items[NvItem.PRECFGKEYS_ENABLE] == b"\x01"


def test_config_rejects_short_key():
    with pytest.raises(ValueError):
        NetworkConfig(network_key=b"\x01\x02", default_key=DEFAULT_KEY)


def test_unicast_request_frame():
    adapter, transport, _ = make_adapter(ok_responder())
    adapter.unicast_request(7, 0x1234, 1, 2, 0x0006, b"\x01\x02")
    expected = DataRequest(0x1234, 2, 1, 0x0006, 7, b"\x01\x02").pack()
    assert transport.written == [encode_frame(Command.AF_DATA_REQUEST, expected)]


def test_unicast_request_failure_status():
    adapter, _, _ = make_adapter(ok_responder(status=1))
    with pytest.raises(ZStackError):
        adapter.unicast_request(1, 0x1234, 1, 1, 6, b"")


def test_request_timeout():
    adapter, _, _ = make_adapter(None, timeout=0.02)
    with pytest.raises(RequestTimeout):
        adapter.send_request(Command.SYS_VERSION)


def test_unrelated_reply_is_ignored():
    def respond(command, payload):
        return [encode_frame(Command.SYS_OSAL_NV_READ ^ 0x4000, b"\x00")]

    adapter, _, _ = make_adapter(respond, timeout=0.02)
    with pytest.raises(RequestTimeout):
        adapter.send_request(Command.SYS_VERSION)


def test_send_request_returns_reply_data():
    def respond(command, payload):
        return [encode_frame(command ^ 0x4000, b"\x00\xaa\xbb")]

    adapter, _, _ = make_adapter(respond)
    assert adapter.send_request(Command.UTIL_GET_DEVICE_INFO) == b"\x00\xaa\xbb"


def test_unicast_inter_pan_request_layout():
    adapter, transport, _ = make_adapter(ok_responder())
    adapter.unicast_inter_pan_request(3, IEEE, 0x1000, b"\x10")
    frame = transport.written[0]
    data = frame[4:-1]
    fields = ExtendedRequest.LAYOUT.unpack_from(data)
    assert fields[0] == AddressMode.IEEE
    assert fields[1] == int.from_bytes(IEEE, "big")
    assert fields[2:5] == (0xFE, 0xFFFF, 0x0C)
    assert fields[8] == AF_DEFAULT_RADIUS * 2
    assert data[ExtendedRequest.LAYOUT.size:] == b"\x10"


def test_unicast_inter_pan_rejects_bad_address():
    adapter, transport, _ = make_adapter(ok_responder())
    with pytest.raises(ValueError):
        adapter.unicast_inter_pan_request(3, b"\x01\x02", 0x1000, b"")
    assert transport.written == []


def test_multicast_uses_group_mode():
    adapter, transport, _ = make_adapter(ok_responder())
    adapter.multicast_request(4, 0x0005, 1, 0xFF, 0x0006, b"")
    fields = ExtendedRequest.LAYOUT.unpack_from(transport.written[0][4:-1])
    assert fields[0] == AddressMode.GROUP
    assert fields[1] == 0x0005
    assert fields[8] == AF_DEFAULT_RADIUS


def test_permit_join_enabled_and_disabled():
    adapter, transport, _ = make_adapter(ok_responder(), config=make_config(permit_join_address=0x1234))
    adapter.permit_join(True)
    adapter.permit_join(False)
    on = PermitJoinRequest.LAYOUT.unpack_from(transport.written[0][4:-1])
    off = PermitJoinRequest.LAYOUT.unpack_from(transport.written[1][4:-1])
    assert on[1:3] == (0x1234, 0xF0)
    assert off[1:3] == (PERMIT_JOIN_BROADCAST_ADDRESS, 0x00)


def test_reset_inter_pan_channel_failure_is_logged_only():
    adapter, transport, _ = make_adapter(ok_responder(status=1))
    adapter.reset_inter_pan_channel()
    assert transport.written == [encode_frame(Command.AF_INTER_PAN_CTL, b"\x00")]


def test_set_inter_pan_channel_failure_raises():
    adapter, _, _ = make_adapter(ok_responder(status=1))
    with pytest.raises(ZStackError):
        adapter.set_inter_pan_channel(15)


def test_write_configuration_frame():
    adapter, transport, _ = make_adapter(ok_responder())
    adapter.write_configuration(NvItem.PRECFGKEY, b"\xaa\xbb")
    assert transport.written[0][4:-1] == bytes([NvItem.PRECFGKEY, 2, 0xAA, 0xBB])


def test_data_confirm_event():
    adapter, _, listener = make_adapter()
    adapter.handle_packet(Command.AF_DATA_CONFIRM, bytes([0x00, 0x01, 0x2A]))
    assert listener.events == [("finished", 0x2A, 0x00)]


def test_incoming_message_event():
    adapter, _, listener = make_adapter()
    header = struct.pack("<HHHBBBBBIBB", 0, 0x0006, 0x1234, 1, 1, 0, 200, 0, 0, 9, 2)
    adapter.feed(encode_frame(Command.AF_INCOMING_MSG, header + b"\x18\x01"))
    assert listener.events == [("zcl", 0x1234, 1, 0x0006, 200, b"\x18\x01")]


def test_extended_message_modes():
    adapter, _, listener = make_adapter()
    fields = (0, 0x1000, 0x03, int.from_bytes(IEEE, "big"), 0x0C, 0xFFFF, 0x0C, 0, 150, 0, 0, 1, 1)
    adapter.handle_packet(Command.AF_INCOMING_MSG_EXT, struct.pack("<HHBQBHBBBBIBH", *fields) + b"\x05")
    short = (0, 0x1000, 0x02) + fields[3:]
    adapter.handle_packet(Command.AF_INCOMING_MSG_EXT, struct.pack("<HHBQBHBBBBIBH", *short) + b"\x05")
    assert listener.events == [("raw", IEEE, 0x1000, 150, b"\x05")]


def test_device_left_and_joined():
    adapter, _, listener = make_adapter()
    adapter.handle_packet(Command.ZDO_LEAVE_IND, struct.pack("<H", 0x4321) + ieee_to_wire(IEEE) + b"\x00\x00\x00")
    announce = struct.pack("<HH", 0x0000, 0x4321) + ieee_to_wire(IEEE) + b"\x8e"
    adapter.handle_packet(Command.ZDO_END_DEVICE_ANNCE_IND, announce)
    assert listener.events == [("left", IEEE), ("joined", IEEE, 0x4321)]


def test_zdo_callback_events():
    adapter, _, listener = make_adapter()
    data = struct.pack("<HBHBBH", 0x4321, 0, 0x8005, 0, 17, 0) + b"\x00\x21"
    adapter.handle_packet(Command.ZDO_MSG_CB_INCOMING, data)
    assert listener.events == [("finished", 17, 0), ("zdo", 0x4321, 0x8005, b"\x00\x21")]


def test_bdb_commissioning_ready_only_on_success():
    adapter, _, listener = make_adapter()
    adapter.handle_packet(Command.ZDO_STATE_CHANGE_IND, bytes([COORDINATOR_STARTED]))
    adapter.handle_packet(Command.APP_CNF_BDB_COMMISSIONING, b"\x00\x00\x01")
    assert listener.events == []
    adapter.handle_packet(Command.APP_CNF_BDB_COMMISSIONING, b"\x00\x00\x00")
    assert listener.events == [("ready",)]
    assert adapter.status == COORDINATOR_STARTED


def test_feed_survives_malformed_packet():
    adapter, _, listener = make_adapter()
    adapter.feed(encode_frame(Command.AF_DATA_CONFIRM, b"\x00") + encode_frame(Command.ZDO_LEAVE_IND, b"\x01"))
    assert listener.events == []


def test_start_coordinator_matching_configuration():
    config = make_config()
    endpoint = Endpoint(1, 0x0104, 0x0005, (0x0000, 0x0006), (0x0019,))
    adapter, transport, _ = make_adapter(coordinator_responder(config), config=config, endpoints=[endpoint])
    adapter.start_coordinator()
    assert adapter.version is ZStackVersion.ZSTACK_3X0
    assert adapter.ieee_address == IEEE
    assert adapter.firmware == "20230507"
    commands = transport.commands()
    assert commands.count(Command.APP_CNF_BDB_SET_CHANNEL) == 2
    assert commands.count(Command.ZDO_MSG_CB_REGISTER) == len(ZDO_CALLBACK_CLUSTERS)
    assert Command.SYS_OSAL_NV_WRITE not in commands
    registered = [w[4:-1] for w in transport.written if int.from_bytes(w[2:4], "big") == Command.AF_REGISTER]
    assert registered == [endpoint.register_request.pack()]
    group = [w[4:-1] for w in transport.written if int.from_bytes(w[2:4], "big") == Command.ZDO_ADD_GROUP]
    assert struct.unpack("<BHB", group[0])[1] == GREEN_POWER_GROUP
    assert commands[-1] == Command.ZDO_STARTUP_FROM_APP


def test_start_coordinator_mismatch_write_protected():
    config = make_config()
    responder = coordinator_responder(config, overrides={NvItem.PANID: b"\x00\x00"})
    adapter, transport, _ = make_adapter(responder, config=config)
    with pytest.raises(ZStackError):
        adapter.start_coordinator()
    assert Command.SYS_OSAL_NV_WRITE not in transport.commands()


def test_start_coordinator_mismatch_clears_then_writes():
    config = make_config(write=True)
    responder = coordinator_responder(config, overrides={NvItem.PANID: b"\x00\x00"})
    adapter, transport, _ = make_adapter(responder, config=config)
    adapter.start_coordinator()
    assert adapter.clear is True
    assert encode_frame(Command.SYS_OSAL_NV_WRITE, bytes([NvItem.STARTUP_OPTION, 0, 0, 1, 3])) in transport.written
    assert bytes([SKIP_BOOTLOADER]) in transport.written
    assert transport.written[-1] == encode_frame(Command.SYS_RESET_REQ, b"\x01")

    transport.written.clear()
    adapter.start_coordinator()
    assert adapter.clear is False
    writes = [w[4:-1] for w in transport.written if int.from_bytes(w[2:4], "big") == Command.SYS_OSAL_NV_WRITE]
    assert [int.from_bytes(w[:2], "little") for w in writes] == list(config.nv_items())
    assert writes[0][4:] == NETWORK_KEY


def test_legacy_stack_reads_key_through_configuration():
    config = make_config()
    adapter, transport, _ = make_adapter(coordinator_responder(config, product=0x00), config=config)
    adapter.start_coordinator()
    commands = transport.commands()
    assert adapter.version is ZStackVersion.ZSTACK_12X
    assert commands.count(Command.ZB_READ_CONFIGURATION) == 1
    assert Command.APP_CNF_BDB_SET_CHANNEL not in commands


def test_startup_failure_raises():
    config = make_config()
    adapter, _, _ = make_adapter(coordinator_responder(config, startup_status=0x02), config=config)
    with pytest.raises(ZStackError):
        adapter.start_coordinator()


def test_legacy_startup_failure_accepted_when_already_started():
    config = make_config()
    adapter, transport, _ = make_adapter(
        coordinator_responder(config, product=0x00, startup_status=0x02), config=config
    )
    adapter.handle_packet(Command.ZDO_STATE_CHANGE_IND, bytes([COORDINATOR_STARTED]))
    adapter.start_coordinator()
    assert transport.commands()[-1] == Command.ZDO_STARTUP_FROM_APP
    assert adapter.status == COORDINATOR_STARTED


def test_reset_indication_starts_coordinator():
    config = make_config()
    adapter, _, _ = make_adapter(coordinator_responder(config), config=config)
    adapter.feed(encode_frame(Command.SYS_RESET_IND, b"\x00\x02\x00\x02\x07\x01"))
    assert adapter.ieee_address == IEEE
    assert adapter.manufacturer_name == "Texas Instruments"


def test_soft_reset_writes():
    adapter, transport, _ = make_adapter()
    adapter.soft_reset()
    assert transport.written == [bytes([SKIP_BOOTLOADER]), encode_frame(Command.SYS_RESET_REQ, b"\x01")]