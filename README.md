# kairpodsd

A library for managing AirPods on Linux. It speaks the AAP control protocol
over a Bluetooth L2CAP channel. It keeps track of each device's state:
battery, noise control mode, ear detection and feature flags. It also learns
how fast the batteries drain, so that it can estimate the time left before
they run out.

## Modules

| Module                  | Purpose                                                          |
|-------------------------|------------------------------------------------------------------|
| `kairpodsd.protocol`    | Packet constants, enums and value types (`BatteryInfo`, `NoiseControlMode`, `FeatureId`, `FeatureCmd`, ...) |
| `kairpodsd.parser`      | Parsing of battery, noise mode, ear detection and metadata packets |
| `kairpodsd.device`      | `AirPods`: live device state and the connection to it           |
| `kairpodsd.l2cap`       | Async L2CAP channel with prefix hooks                            |
| `kairpodsd.study`       | `BatteryStudy`: drain-rate statistics kept per device in LMDB    |
| `kairpodsd.tracker`     | `BatteryTracker`: real-time drain tracking and TTL estimates     |
| `kairpodsd.config`      | `Config`: known devices and connection parameters (TOML)         |
| `kairpodsd.events`      | Events emitted on state changes, and a queue-backed event bus    |
| `kairpodsd.recognition` | Deciding whether a Bluetooth device is a pair of AirPods         |
| `kairpodsd.ringbuf`     | Fixed-capacity ring buffer                                       |
| `kairpodsd.errors`      | The `AirPodsError` hierarchy                                     |

## Parsing packets

```python
from kairpodsd.parser import parse_battery_status

packet = bytes.fromhex(
    "040004000400"   # battery status header
    "02"             # two components follow
    "0401320201"     # left: 50 %, discharging
    "02013c0001"     # right: 60 %, normal
)

battery = parse_battery_status(packet)
print(battery)            # L:50%(Discharging) R:60%(Normal) C:0%(Disconnected) H:0%(Disconnected)
print(battery.to_json())  # {'left': {'level': 50, 'charging': False}, ..., 'case': None, ...}
```

Malformed packets raise a subclass of `ProtoError`:

- `WrongPacketTypeError`
- `PacketTooShortError`
- `InvalidBatteryCountError`
- `PacketSizeMismatchError`
- `UnknownNoiseModeError`

`ProtoError` itself is an `AirPodsError`. The other parsers are
`parse_noise_mode`, `parse_ear_detection` and `parse_metadata`.
`parse_metadata` returns a `Metadata` whose `name_candidate` is text found in
the packet that looks like a device name.

## Building commands

```python
from kairpodsd.protocol import FeatureCmd, FeatureId, NoiseControlMode, build_control_packet

mode = NoiseControlMode.parse("anc")
packet = build_control_packet(0x0D, mode.value.to_bytes(4, "little"))

feature = FeatureId.from_name("conversational")
enable = FeatureCmd.ENABLE.build(feature)
print(FeatureCmd.parse(enable))   # (FeatureId(id=40), <FeatureCmd.ENABLE: 1>)
```

The noise control modes have these wire names: `off`, `anc`, `transparency`
and `adaptive`. `FeatureId.from_name` accepts the names listed in
`KNOWN_FEATURES`, ignoring case. For a feature id without a known name,
`to_str()` gives the id in two hex digits.

## Device state and events

```python
from kairpodsd.device import AirPods
from kairpodsd.events import QueueEventBus

bus = QueueEventBus()
pods = AirPods("00:11:22:33:44:55", "Test AirPods", None)

pods.process_packet(packet, bus)
for device, event in bus.drain():
    print(device.address, event.kind, event.payload)

print(pods.to_json())
```

`process_packet` updates the device state from one received packet. It emits
an `AirPodsEvent` only when a value actually changes. The event kinds are
listed in `EventKind`. `to_json()` returns the following:

- the address, the name and the connection state;
- the battery, the noise mode and the ear detection, when they are known;
- the reported features;
- a `battery_ttl_estimate` in minutes.

If the tracker has no estimate, the TTL falls back to a drain rate of
16.9 %/h.

`await pods.connect(event_bus, channel=None)` opens the control channel,
performs the handshake and starts processing incoming packets.

- **Default channel.** By default it opens an L2CAP connection to the
  device's address with `kairpodsd.l2cap.connect`.
- **Custom channel.** `channel` may be any async callable that takes the
  `Hooks` to install and returns an `L2CapChannel`.
- **Return value.** It returns an `asyncio.Task`. The task finishes when the
  connection closes, with the error that closed it or `None`.

Once connected, `set_noise_control`, `set_feature` and `passthrough` send
commands. Without a connection they raise `DeviceNotConnectedError`.
`disconnect()` saves the battery study and closes the channel. `tick()` saves
battery statistics periodically while connected.

`kairpodsd.l2cap.open_channel(sock, address, hooks)` wraps a socket that is
already connected. This is useful for testing with a socket pair.

## Battery study

`BatteryStudy.open(path)` opens or creates an LMDB environment. The
environment holds one `DeviceStudy` per device address. For each noise
control mode, the study keeps a running mean and variance of the drain rate.

Without a path, the location comes from `db_path()`:

- the `AIRPODS_BATTERY_DB_PATH` environment variable, if it is set;
- otherwise `kairpods/battery_study.db` under the user's data directory.

`get_drain_rate(address, mode)` returns `(rate, confidence)`, where
`confidence` is the 95 % half-width. With fewer than two samples,
`confidence` is infinite.

`BatteryTracker(study, clock)` records battery drops while the buds are in
use. It fits a drain rate over the last two hours and combines it with the
historical rate from the study. `estimate_ttl` then smooths the resulting
time-to-live estimate. It returns `None` in these cases:

- a bud is charging or disconnected;
- no drain rate is available;
- the estimate is not between 0 and 24 hours.

## Configuration

`Config.load()` reads the file given by `config_path()`:

- the file named by `AIRPODS_CONFIG_PATH`, if it is set;
- otherwise `kairpods/config.toml` in the user's configuration directory.

If the file does not exist, `load()` writes a default one. Invalid contents
raise `ConfigError`. The settings are:

| Key                      | Default |
|--------------------------|---------|
| `known_devices`          | `[]`    |
| `poll_interval`          | `30`    |
| `connection_retry_count` | `10`    |
| `reconnect_delay_sec`    | `10`    |
| `notification_retries`   | `3`     |
| `log_filter`             | unset   |

Each entry in `known_devices` has an `address` and a `name`.
`Config.is_known_device(address)` returns the name of a listed device.

## Recognition

`is_device_airpods(DeviceInfo(...))` checks the evidence in this order:

1. the modalias (vendor and product);
2. Apple manufacturer data;
3. Apple service UUIDs;
4. the name or alias (`airpods`, `beats`, `powerbeats`).

The caller fills in `DeviceInfo`. The library does not query Bluetooth for it.

## What is not included

This is a library, not a running service:

- there is no command to start;
- there is no D-Bus interface;
- there is no Bluetooth adapter discovery or monitoring, and no automatic
  reconnection.

An application has to find the devices, create `AirPods` objects, call
`connect` and `tick`, and consume the events from its `EventBus`.