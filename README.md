# znplink

A small library with no dependencies for driving a Texas Instruments
Z-Stack (ZNP) Zigbee coordinator over a byte link such as a serial port.

It has three modules:

- `znplink.frame` — the ZNP serial framing. `encode_frame(command, data)`
  builds a frame (flag byte `0xFE`, length, big-endian command, data, XOR
  checksum) and raises `FrameError` when the data is longer than 255 bytes
  or the command does not fit in two bytes. `checksum` is the XOR of the
  bytes given. `FrameDecoder.feed(data)` collects incoming bytes and
  returns the list of complete `Frame`s (`command`, `data`); a buffer that
  does not start with the flag, is shorter than a minimal frame, or has a
  wrong checksum is discarded and a warning is logged. `FrameDecoder.clear()`
  drops buffered bytes.
- `znplink.messages` — the `Command` and `NvItem` identifiers,
  `AddressMode`, `ZStackVersion`, and dataclasses for the binary payloads:
  requests with `pack()` (`DataRequest`, `ExtendedRequest`,
  `PermitJoinRequest`, `RegisterEndpointRequest`, `AddGroupRequest`,
  `SetChannelRequest`, `NvReadRequest`, `NvWriteRequest`,
  `WriteConfigurationRequest`) and replies or indications with the class
  method `unpack(data)` (`VersionInfo`, `DataConfirm`, `IncomingMessage`,
  `ExtendedMessage`, `ZdoMessage`, `DeviceLeave`). `unpack` raises
  `ValueError` on data that is too short. `ieee_from_wire` and
  `ieee_to_wire` reverse the byte order of an 8-byte IEEE address.
- `znplink.adapter` — `ZStackAdapter`, which sends synchronous requests,
  hands indications to a listener, checks or rewrites the network settings
  held by the adapter, registers endpoints and starts the coordinator.

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Framing

```python
from znplink.frame import FrameDecoder, encode_frame
from znplink.messages import Command

raw = encode_frame(Command.SYS_VERSION, b"")

decoder = FrameDecoder()
for frame in decoder.feed(raw):
    print(hex(frame.command), frame.data.hex())
```

A `Frame` tells whether it is a synchronous reply (`is_sync_response`) and
whether it answers a given request command (`answers(command)`).

## Driving an adapter

`ZStackAdapter` needs a transport: any object with `write(data)` and
`read(timeout)` that returns the bytes available (possibly none) within
`timeout` seconds. While waiting for the reply to a request,
`send_request` reads from the transport itself and handles every packet it
decodes. Bytes read at other times are passed to `ZStackAdapter.feed`.

Indications are delivered to the listener, an object with these methods:
`request_finished`, `zcl_message_received`, `raw_message_received`,
`zdo_message_received`, `device_joined`, `device_left` and
`coordinator_ready`. The listener may be `None`.

```python
from znplink.adapter import Endpoint, NetworkConfig, ZStackAdapter


class Listener:
    def request_finished(self, transaction_id, status): ...
    def zcl_message_received(self, network_address, endpoint_id, cluster_id, link_quality, payload): ...
    def raw_message_received(self, ieee_address, cluster_id, link_quality, payload): ...
    def zdo_message_received(self, network_address, cluster_id, payload): ...
    def device_joined(self, ieee_address, network_address): ...
    def device_left(self, ieee_address): ...
    def coordinator_ready(self): ...


config = NetworkConfig(
    network_key=bytes(range(16)),   # made-up 16-byte key
    default_key=bytes(16),          # made-up 16-byte key
    channel=11,
    pan_id=0x1A62,
    write=True,
)

adapter = ZStackAdapter(
    transport,                      # your object with write() and read(timeout)
    config,
    listener=Listener(),
    endpoints=[Endpoint(endpoint_id=1, profile_id=0x0104, device_id=0x0005)],
    timeout=10.0,
)

adapter.soft_reset()            # the reset indication, once fed, starts the coordinator
adapter.feed(transport.read(1.0))
adapter.permit_join(True)
adapter.unicast_request(1, 0x1234, 1, 1, 0x0006, b"\x01\x01\x01")
```

`start_coordinator` reads the firmware version and IEEE address, compares
the NV items from `NetworkConfig.nv_items()` with what the adapter holds
and, if they differ and `write` is set, sets the clear-state start-up
option and resets the adapter; on the next start the items are written.
With `write` unset a mismatch raises `ZStackError`. It then sets the
channel (Z-Stack 3.x), registers ZDO callbacks and endpoints, sets the
Inter-PAN endpoint, joins the Green Power group, sets the TX power and
starts the network.

Other requests: `multicast_request`, `unicast_inter_pan_request`,
`broadcast_inter_pan_request`, `set_inter_pan_channel`,
`reset_inter_pan_channel` (failure only logged), `write_nv_item` and
`write_configuration`. A request the adapter rejects raises `ZStackError`;
one left unanswered raises `RequestTimeout`.

## What it does not do

The package does not open serial ports, does not parse ZCL or ZDO
payloads, keeps no device database and has no command-line program. It
covers the coordinator link only; what to do with the messages it reports
is up to the listener.