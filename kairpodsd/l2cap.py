"""L2CAP control channel with separate sender and receiver halves."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import Callable, Iterable
from enum import Enum

from kairpodsd.errors import ConnectionClosedError, ConnectionLostError, RequestTimeoutError

log = logging.getLogger(__name__)

PSM_CONTROL = 0x1001
L2CAP_MTU = 672
WRITE_TIMEOUT = 25.0
CONNECT_TIMEOUT = 10.0
_QUEUE_SIZE = 128
_MAX_PREFIX = 8

_CLOSED = object()

Callback = Callable[[bytes], None]


class HookDisposition(Enum):
    """What happens to a hook after it fired."""

    DISCARD = "discard"
    RETAIN = "retain"


class Hook:
    """A callback run on incoming packets that start with a prefix."""

    def __init__(
        self,
        callback: Callback,
        disposition: HookDisposition = HookDisposition.RETAIN,
        prefix: bytes = b"",
    ) -> None:
        self.callback = callback
        self.disposition = disposition
        self.prefix = b""
        self.with_prefix(prefix)

    @classmethod
    def once(cls, callback: Callback) -> Hook:
        """A hook that fires at most once and is then discarded."""
        fired = False

        def call_once(data: bytes) -> None:
            nonlocal fired
            if not fired:
                fired = True
                callback(data)

        return cls(call_once, HookDisposition.DISCARD)

    def with_prefix(self, prefix: bytes) -> Hook:
        """Match only packets that start with ``prefix`` (at most 8 bytes)."""
        prefix = bytes(prefix)
        if len(prefix) > _MAX_PREFIX:
            raise ValueError(f"hook prefix longer than {_MAX_PREFIX} bytes")
        self.prefix = prefix
        return self

    def passthrough(self, data: bytes) -> HookDisposition:
        if bytes(data).startswith(self.prefix):
            self.callback(bytes(data))
            return self.disposition
        return HookDisposition.RETAIN


class Hooks:
    """An ordered set of hooks applied to every incoming packet."""

    def __init__(self, hooks: Iterable[Hook] = ()) -> None:
        self._hooks: list[Hook] = list(hooks)

    def install(self, hook: Hook) -> Hooks:
        self._hooks.append(hook)
        return self

    def prefix_once(self, prefix: bytes, callback: Callback) -> Hooks:
        return self.install(Hook.once(callback).with_prefix(prefix))

    def passthrough(self, data: bytes) -> None:
        """Run every hook on ``data`` and drop those that ask to be discarded."""
        self._hooks = [
            hook for hook in self._hooks if hook.passthrough(data) is HookDisposition.RETAIN
        ]

    def __len__(self) -> int:
        return len(self._hooks)


class L2CapSender:
    """Sending half of a channel."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self._closed = False

    def is_connected(self) -> bool:
        return not self._closed

    async def send(self, data: bytes) -> None:
        """Send one packet and wait until it has been written."""
        if self._closed:
            raise ConnectionClosedError()
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._queue.put((bytes(data), done))
        try:
            await asyncio.wait_for(done, WRITE_TIMEOUT)
        except asyncio.TimeoutError:
            raise RequestTimeoutError() from None


class L2CapReceiver:
    """Receiving half of a channel."""

    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self._closed = False

    async def recv(self) -> bytes:
        """Return the next packet; raise once the connection is lost or closed."""
        if self._closed:
            raise ConnectionClosedError()
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise ConnectionClosedError()
        if isinstance(item, BaseException):
            raise item
        return item


class L2CapChannel:
    """An open channel: its two halves and the tasks that move the packets."""

    def __init__(
        self,
        sock: socket.socket,
        receiver: L2CapReceiver,
        sender: L2CapSender,
        tasks: list[asyncio.Task],
    ) -> None:
        self._sock = sock
        self.receiver = receiver
        self.sender = sender
        self._tasks = tasks

    async def close(self) -> None:
        """Stop both tasks and close the socket."""
        self.sender._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._sock.close()

    async def __aenter__(self) -> L2CapChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


async def _recv_loop(
    address: str, sock: socket.socket, queue: asyncio.Queue, hooks: Hooks
) -> None:
    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                data = await loop.sock_recv(sock, L2CAP_MTU)
            except OSError as exc:
                log.debug("Receive from %s failed: %s", address, exc)
                return
            if not data:
                log.warning("Connection lost")
                await queue.put(ConnectionLostError())
                return
            log.debug("← %s: %s", address, data.hex())
            hooks.passthrough(data)
            await queue.put(data)
    finally:
        with contextlib.suppress(asyncio.QueueFull):
            queue.put_nowait(_CLOSED)


async def _send_loop(
    address: str, sock: socket.socket, queue: asyncio.Queue, sender: L2CapSender
) -> None:
    loop = asyncio.get_running_loop()
    try:
        while True:
            data, done = await queue.get()
            log.debug("→ %s: %s", address, data.hex())
            try:
                await loop.sock_sendall(sock, data)
            except OSError as exc:
                log.warning("Failed to send data: %s", exc)
                if not done.done():
                    done.set_exception(exc)
            else:
                if not done.done():
                    done.set_result(None)
    finally:
        sender._closed = True
        while not queue.empty():
            _, done = queue.get_nowait()
            if not done.done():
                done.set_exception(ConnectionClosedError())
        log.warning("User shutdown")


def open_channel(
    sock: socket.socket, address: str, hooks: Hooks | None = None
) -> L2CapChannel:
    """Start moving packets over an already connected packet socket."""
    sock.setblocking(False)
    hooks = hooks if hooks is not None else Hooks()
    incoming: asyncio.Queue = asyncio.Queue(_QUEUE_SIZE)
    outgoing: asyncio.Queue = asyncio.Queue(_QUEUE_SIZE)
    receiver = L2CapReceiver(incoming)
    sender = L2CapSender(outgoing)
    tasks = [
        asyncio.create_task(_recv_loop(address, sock, incoming, hooks)),
        asyncio.create_task(_send_loop(address, sock, outgoing, sender)),
    ]
    return L2CapChannel(sock, receiver, sender, tasks)


async def connect(
    address: str, hooks: Hooks | None = None, psm: int | None = None
) -> L2CapChannel:
    """Open an L2CAP sequential-packet connection to ``address``."""
    family = getattr(socket, "AF_BLUETOOTH", None)
    proto = getattr(socket, "BTPROTO_L2CAP", None)
    if family is None or proto is None:
        raise OSError("Bluetooth sockets are not supported on this platform")
    psm = PSM_CONTROL if psm is None else psm
    log.debug("Creating L2CAP socket for %s", address)
    sock = socket.socket(family, socket.SOCK_SEQPACKET, proto)
    sock.setblocking(False)
    log.debug("Connecting to %s:%d", address, psm)
    try:
        await asyncio.wait_for(
            asyncio.get_running_loop().sock_connect(sock, (address, psm)), CONNECT_TIMEOUT
        )
    except asyncio.TimeoutError:
        sock.close()
        raise RequestTimeoutError() from None
    except BaseException:
        sock.close()
        raise
    return open_channel(sock, address, hooks)