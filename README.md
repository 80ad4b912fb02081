# proxykit

Building blocks for proxy clients and servers, as a library.

## What is in it

- **VMess**
  - `proxykit.vmess_addr`: `parse_addr("host:port")` returns `(Atyp, encoded address, port)`.
  - `proxykit.vmess_chunk`: `ShakeSizeParser` (SHAKE128-masked chunk sizes),
    `ChunkedWriter` and `ChunkedReader`.
  - `proxykit.vmess_aead`: `AEADWriter` and `AEADReader`, chunk streams sealed
    with an AEAD cipher.
  - `proxykit.vmess_user`: `User` (`from_uuid`, `gen_alter_id_users`),
    `str_to_uuid`, `get_key` and `timestamp_hash`.
  - `proxykit.vmess_auth`: `kdf`, `create_auth_id`, `seal_aead_header` and
    `open_aead_header`.
  - `proxykit.vmess_client`: `Client` (security `"aes-128-gcm"`,
    `"chacha20-poly1305"`, `"none"`, `"zero"`, or `""` to choose by machine),
    `Client.new_conn`, the `Conn` it returns, and `PktConn`.
- **VLESS**
  - `proxykit.vless_addr`: `parse_addr`, `read_addr`, `read_addr_string`,
    `addr_string`.
  - `proxykit.vless`: `str_to_uuid`, `VLess` (built from
    `vless://uuid@host:port[?fallback=host:port]`; `dial`, `dial_udp`,
    `read_header`, and on the server side `serve` and `listen_and_serve`),
    `ClientConn`, `ServerConn` and `PktConn`.
- **WebSocket framing**: `proxykit.ws_frame.FrameWriter` and `FrameReader`
  for binary frames; client writers mask, server readers unmask.
- **Routing**
  - `proxykit.config`: `Strategy`, `Config` (`Config.from_file` reads
    `key=value` lines, `#` starts a comment) and `list_dir`.
  - `proxykit.forward`: `DirectDialer`, `Forwarder`, `forwarder_from_url`,
    `direct_forwarder`.
  - `proxykit.check`: `TcpChecker`, `HttpChecker` and `FileChecker` (runs a
    script with `FORWARDER_ADDR` and `FORWARDER_URL` in its environment).
  - `proxykit.group`: `FwdrGroup` with the strategies `rr` (round robin),
    `ha` (high availability), `lha` (latency based) and `dh` (destination
    hashing), plus `new_fwdr_group`, `check_forwarder` and `get_time_duration`.
  - `proxykit.rule_proxy`: `RuleProxy`, which picks a group by IP, then CIDR,
    then domain suffix, falling back to the main group.
- **Services**
  - `proxykit.service`: `register(name, creator)` and `new_service("name,arg,...")`.
  - `proxykit.dhcp_pool`: `Pool` with `lease_ip`, `lease_static_ip`,
    `release_ip` and `expire`.

## Installation

```
pip install proxykit
```

## Examples

Convert a VLESS id to its 16-byte form:

```python
from proxykit.vless import str_to_uuid

uid = str_to_uuid("b831381d-6324-4d53-ad4f-8cda48b30811")
assert len(uid) == 16
```

Frame data as WebSocket binary frames:

```python
import io
from proxykit.ws_frame import FrameWriter, FrameReader

buf = io.BytesIO()
FrameWriter(buf, server=True).write(b"hello")
buf.seek(0)
assert FrameReader(buf, server=False).read(5) == b"hello"
```

Lease addresses from a DHCP pool:

```python
from datetime import timedelta
from proxykit.dhcp_pool import Pool

pool = Pool(timedelta(hours=12), "192.168.1.100", "192.168.1.199")
mac = bytes.fromhex("020000000001")
ip = pool.lease_ip(mac)
assert pool.lease_ip(mac) == ip
pool.release_ip(mac)
```

Route destinations by rule. Forward URLs are turned into dialers by a function
you pass in; it receives the URL and the dialer it wraps:

```python
from proxykit.config import Config, Strategy
from proxykit.rule_proxy import RuleProxy

class Upstream:
    def __init__(self, url, inner):
        self.addr = url.split("://", 1)[1]
        self.inner = inner

    def dial(self, network, addr):
        return self.inner.dial(network, self.addr)

    def dial_udp(self, network, addr):
        return self.inner.dial_udp(network, self.addr)

rule = Config(rule_path="office.rule",
              forward=["upstream://10.0.0.1:1080"],
              domain=["example.com"])
proxy = RuleProxy([], Strategy(), [rule], Upstream)
assert proxy.find_dialer("www.example.com:443").name == "office"
```

Register and start a service by name:

```python
from proxykit.service import register, new_service

class Echo:
    def __init__(self, *args):
        self.args = args

    def run(self):
        print(*self.args)

register("echo", Echo)
new_service("echo,arg1,arg2").run()
```

## What it does not do

- There is no command-line program; everything is used from Python.
- No proxy URL schemes are built in. `forwarder_from_url`, `new_fwdr_group`
  and `RuleProxy` need a `dialer_from_url` function from the caller.
- `proxykit.ws_frame` handles frames only, not the HTTP upgrade handshake.
- `proxykit.dhcp_pool` manages addresses only; it does not send or answer
  DHCP messages.
- `proxykit.vmess_client` is a client only; there is no VMess server.

## Running the tests

```
pip install -e ".[test]"
pytest
```