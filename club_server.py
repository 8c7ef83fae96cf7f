#!/usr/bin/env python3

"""
Real-time sync server for the Club 3D social space (WebSocket version).

Every client keeps one WebSocket open. The server holds an in-memory view of
the named players (position, rotation, action, shader, appearance, animation),
the rooms they joined and a shared environment (lights, shaders, audio mode),
and relays each change to the other clients. Nothing is persisted: a restart
is a full reset.

Frames are JSON objects shaped {"type": <event>, "data": <payload>}.

Run: python club_server.py
Listens on 0.0.0.0:$PORT (default 3000), optional TLS via --cert/--key for wss://
Requires: websockets (pip install websockets)
"""

import argparse
import asyncio
import json
import math
import os
import ssl
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

HOST = "0.0.0.0"
PORT = int(os.environ.get("PORT") or 3000)

# Minimum spacing between two accepted moves of one connection (~60fps)
POSITION_UPDATE_RATE_MS = 16

# Transport settings; heartbeat timing belongs to the websockets layer
PING_INTERVAL_S = 25
PING_TIMEOUT_S = 60
MAX_FRAME_BYTES = 64 * 1024
ALLOWED_ORIGINS = [
    "http://127.0.0.1:5500",
    "http://localhost:5500",
    "https://club-3d.vercel.app",
]

MAX_USERNAME_LEN = 32
MAX_ROOM_ID_LEN = 64
MAX_CHAT_LEN = 500
UNKNOWN_NAME = "Unknown"
DEFAULT_ACTION = "Idle"

DEFAULT_LIGHTS = {"light1": 1, "light2": 1, "tube": 1}
DEFAULT_AUDIO_MODE = "default"

# Toggle verbose per-move logging (disabled to reduce console spam)
VERBOSE_UPDATES = False


def now_ms() -> int:
    return int(time.monotonic() * 1000)


def log(tag: str, msg: str) -> None:
    print(f"[{tag}] {msg}", flush=True)


# ---- Errors -----------------------------------------------------------------

class SyncError(Exception):
    """Base class for failures while handling one inbound event."""


class MalformedPayload(SyncError, ValueError):
    """The payload failed shape validation. The event is dropped."""

    def __init__(self, reason: str, event: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.event = event


class UnknownConnection(SyncError):
    """The event came from a connection that is not registered."""


class InternalInvariantViolation(SyncError):
    """A registry was found in an impossible state.

    Fatal to the session that hit it, never to the process.
    """


# ---- Data model -------------------------------------------------------------

def origin() -> Dict[str, float]:
    return {"x": 0.0, "y": 0.0, "z": 0.0}


@dataclass
class Player:
    """Synchronized state of a named connection.

    appearance and animation are opaque client blobs; they stay off the wire
    until a client has set them.
    """
    id: str
    username: str
    position: Dict[str, float] = field(default_factory=origin)
    rotation: Dict[str, float] = field(default_factory=origin)
    shader_index: int = 0
    action: str = DEFAULT_ACTION
    appearance: Optional[Dict[str, Any]] = None
    animation: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "username": self.username,
            "position": dict(self.position),
            "rotation": dict(self.rotation),
            "shaderIndex": self.shader_index,
            "action": self.action,
        }
        if self.appearance is not None:
            out["appearance"] = self.appearance
        if self.animation is not None:
            out["animation"] = self.animation
        return out


@dataclass
class EnvironmentState:
    lights: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LIGHTS))
    shaders: Dict[str, Any] = field(default_factory=dict)
    audio_mode: str = DEFAULT_AUDIO_MODE

    def apply(self, patch: Dict[str, Any]) -> None:
        """Replace each top-level key present in a validated patch.

        Shallow on purpose: {"lights": {"light1": 0}} drops light2 and tube.
        """
        if "lights" in patch:
            self.lights = dict(patch["lights"])
        if "shaders" in patch:
            self.shaders = dict(patch["shaders"])
        if "audioMode" in patch:
            self.audio_mode = patch["audioMode"]

    def reset(self) -> None:
        self.lights = dict(DEFAULT_LIGHTS)
        self.shaders = {}
        self.audio_mode = DEFAULT_AUDIO_MODE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lights": dict(self.lights),
            "shaders": dict(self.shaders),
            "audioMode": self.audio_mode,
        }


@dataclass
class Connection:
    """One client's live session.

    rooms is the reverse index of room membership; current_room is the room
    joined most recently and scopes audio sync.
    """
    id: str
    ws: Any
    peer: str = "?"
    rooms: Set[str] = field(default_factory=set)
    current_room: Optional[str] = None
    closed: bool = False
    # Serializes writes to this socket; held while the connect snapshot is sent
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


@dataclass
class Room:
    id: str
    members: Set[str] = field(default_factory=set)


# ---- Registries -------------------------------------------------------------

class PlayerRegistry:
    def __init__(self):
        self._players: Dict[str, Player] = {}

    def create(self, conn_id: str, username: str) -> Player:
        # Replace, not merge: a rename resets position, rotation and the rest.
        player = Player(id=conn_id, username=username)
        self._players[conn_id] = player
        return player

    def get(self, conn_id: str) -> Optional[Player]:
        return self._players.get(conn_id)

    def remove(self, conn_id: str) -> Optional[Player]:
        return self._players.pop(conn_id, None)

    def all(self) -> List[Player]:
        return list(self._players.values())

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._players

    def __len__(self) -> int:
        return len(self._players)


class RoomRegistry:
    """room id -> member connection ids. A room exists iff it has a member."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def join(self, conn_id: str, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(id=room_id)
            self._rooms[room_id] = room
        room.members.add(conn_id)
        return room

    def leave(self, conn_id: str, room_id: str) -> bool:
        """Drop one membership; return True when the room was deleted."""
        room = self._rooms.get(room_id)
        if room is None:
            raise InternalInvariantViolation(
                f"room '{room_id}' indexed for {conn_id} but missing from room table")
        room.members.discard(conn_id)
        if not room.members:
            del self._rooms[room_id]
            return True
        return False

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def all(self) -> List[Room]:
        return list(self._rooms.values())

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)


class RateLimiter:
    """Per-connection gate for movement updates.

    An update is accepted when nothing was accepted before or the last accepted
    one is at least min_interval_ms old. Rejected updates are dropped, never
    buffered, so the tail of a burst may never be delivered.
    """

    def __init__(self, min_interval_ms: int = POSITION_UPDATE_RATE_MS):
        self.min_interval_ms = min_interval_ms
        self.last_accepted: Dict[str, int] = {}

    def allow(self, key: str, now: int) -> bool:
        last = self.last_accepted.get(key)
        if last is not None and now - last < self.min_interval_ms:
            return False
        self.last_accepted[key] = now
        return True

    def forget(self, key: str) -> None:
        self.last_accepted.pop(key, None)


# ---- Broadcast --------------------------------------------------------------

def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"type": event, "data": data}, separators=(",", ":"), allow_nan=False)


@dataclass
class Delivery:
    targets: List[Connection]
    frame: str


class Dispatcher:
    """Fan-out over the registered connections.

    Frames are encoded while the caller holds the state lock so every target
    gets the same snapshot; send() runs after the lock is released.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}

    def register(self, conn: Connection) -> None:
        self.connections[conn.id] = conn

    def unregister(self, conn_id: str) -> Optional[Connection]:
        return self.connections.pop(conn_id, None)

    def to_one(self, conn: Connection, event: str, data: Any) -> Delivery:
        return Delivery([conn], encode_frame(event, data))

    def to_all(self, event: str, data: Any) -> Delivery:
        return Delivery(list(self.connections.values()), encode_frame(event, data))

    def to_others(self, sender: Connection, event: str, data: Any) -> Delivery:
        targets = [c for cid, c in self.connections.items() if cid != sender.id]
        return Delivery(targets, encode_frame(event, data))

    def to_room(self, room: Room, sender: Connection, event: str, data: Any) -> Delivery:
        targets = [
            self.connections[cid]
            for cid in room.members
            if cid != sender.id and cid in self.connections
        ]
        return Delivery(targets, encode_frame(event, data))

    async def send(self, *deliveries: Delivery) -> None:
        for d in deliveries:
            if not d.targets:
                continue
            results = await asyncio.gather(*(self._send_one(c, d.frame) for c in d.targets), return_exceptions=True)
            for conn, res in zip(d.targets, results):
                report_send_error(conn, res)

    async def _send_one(self, conn: Connection, frame: str) -> None:
        async with conn.send_lock:
            await conn.ws.send(frame)


def report_send_error(conn: Connection, res: Any) -> None:
    # Closed sockets are cleaned up by their own connection loop
    if isinstance(res, ConnectionClosed):
        return
    if isinstance(res, Exception):
        log("WS", f"send to {conn.id} failed: {res!r}")


# ---- Payload validation -----------------------------------------------------

def parse_envelope(raw: Any) -> Tuple[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayload("invalid_encoding")
    try:
        msg = json.loads(raw, parse_constant=_reject_constant, parse_float=_finite_float)
    except ValueError:
        raise MalformedPayload("invalid_json")
    if not isinstance(msg, dict):
        raise MalformedPayload("invalid_envelope")
    event = msg.get("type")
    if not isinstance(event, str) or not event:
        raise MalformedPayload("missing_type")
    return event, msg.get("data")


def _reject_constant(name: str):
    # NaN / Infinity are not JSON; browsers cannot parse them back
    raise ValueError(f"non-standard constant {name}")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"float out of range: {text[:32]}")
    return value


def _as_finite(v: Any) -> Optional[float]:
    """Return v as a finite float, or None when it is not a usable number."""
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except OverflowError:
        return None
    return f if math.isfinite(f) else None


def parse_vec3(value: Any, name: str) -> Dict[str, float]:
    if not isinstance(value, dict):
        raise MalformedPayload(f"invalid_{name}")
    out = {}
    for axis in ("x", "y", "z"):
        f = _as_finite(value.get(axis))
        if f is None:
            raise MalformedPayload(f"invalid_{name}")
        out[axis] = f
    return out


def validate_username(data: Any) -> str:
    if not isinstance(data, str):
        raise MalformedPayload("invalid_username")
    name = data.strip()
    if not name or len(name) > MAX_USERNAME_LEN:
        raise MalformedPayload("invalid_username")
    return name


def validate_room_id(data: Any) -> str:
    if not isinstance(data, str) or not data or len(data) > MAX_ROOM_ID_LEN:
        raise MalformedPayload("invalid_room_id")
    return data


def validate_move(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedPayload("invalid_move")
    action = data.get("action")
    if not isinstance(action, str):
        raise MalformedPayload("invalid_action")
    return {
        "position": parse_vec3(data.get("position"), "position"),
        "rotation": parse_vec3(data.get("rotation"), "rotation"),
        "action": action,
    }


def validate_shader_index(data: Any) -> int:
    if not isinstance(data, int) or isinstance(data, bool):
        raise MalformedPayload("invalid_shader_index")
    return data


def validate_blob(data: Any, name: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedPayload(f"invalid_{name}")
    return data


def validate_audio_sync(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedPayload("invalid_audio_sync")
    timestamp = data.get("timestamp")
    playing = data.get("playing")
    song_id = data.get("songId")
    if _as_finite(timestamp) is None or not isinstance(playing, bool) or not isinstance(song_id, str):
        raise MalformedPayload("invalid_audio_sync")
    return {"timestamp": timestamp, "playing": playing, "songId": song_id}


def validate_environment_patch(data: Any) -> Tuple[Dict[str, Any], List[str]]:
    """Check a partial environment update.

    Returns (patch, ignored_keys). Unknown top-level keys are ignored; a known
    key with the wrong shape rejects the whole update.
    """
    if not isinstance(data, dict):
        raise MalformedPayload("invalid_environment")
    patch: Dict[str, Any] = {}
    ignored: List[str] = []
    for key, value in data.items():
        if key == "lights":
            if not isinstance(value, dict):
                raise MalformedPayload("invalid_lights")
            lights: Dict[str, int] = {}
            for name, level in value.items():
                if isinstance(level, float) and level.is_integer():
                    level = int(level)
                if not isinstance(level, int) or isinstance(level, bool):
                    raise MalformedPayload("invalid_lights")
                lights[str(name)] = level
            patch["lights"] = lights
        elif key == "shaders":
            if not isinstance(value, dict):
                raise MalformedPayload("invalid_shaders")
            patch["shaders"] = dict(value)
        elif key == "audioMode":
            if not isinstance(value, str):
                raise MalformedPayload("invalid_audio_mode")
            patch["audioMode"] = value
        else:
            ignored.append(str(key))
    return patch, ignored


def normalize_chat(data: Any) -> str:
    """Accept a bare string or {"message": str}; return the message text."""
    if isinstance(data, dict):
        data = data.get("message")
    if not isinstance(data, str) or not data:
        raise MalformedPayload("invalid_chat_message")
    return data[:MAX_CHAT_LEN]


# ---- Server -----------------------------------------------------------------

@dataclass
class ServerConfig:
    host: str = HOST
    port: int = PORT
    cert: Optional[str] = None
    key: Optional[str] = None
    origins: Optional[List[str]] = field(default_factory=lambda: list(ALLOWED_ORIGINS))
    ping_interval: float = PING_INTERVAL_S
    ping_timeout: float = PING_TIMEOUT_S
    max_size: int = MAX_FRAME_BYTES
    move_interval_ms: int = POSITION_UPDATE_RATE_MS
    verbose: bool = VERBOSE_UPDATES
    interactive: bool = False


class SyncServer:
    """Owns every registry and runs the connection lifecycle.

    Created once at process start. Each handler validates its payload first,
    then mutates state and encodes its outgoing frames under one lock, then
    sends after releasing it.
    """

    def __init__(self, config: Optional[ServerConfig] = None, clock=now_ms):
        self.config = config or ServerConfig()
        self.clock = clock
        self.lock = asyncio.Lock()
        self.players = PlayerRegistry()
        self.rooms = RoomRegistry()
        self.environment = EnvironmentState()
        self.limiter = RateLimiter(self.config.move_interval_ms)
        self.dispatcher = Dispatcher()
        self.handlers = {
            "set username": self.on_set_username,
            "joinRoom": self.on_join_room,
            "playerMove": self.on_player_move,
            "get shaders": self.on_shader_update,
            "appearanceUpdate": self.on_appearance_update,
            "animationUpdate": self.on_animation_update,
            "audioSync": self.on_audio_sync,
            "environmentUpdate": self.on_environment_update,
            "chat message": self.on_chat_message,
        }

    # -- lifecycle --

    async def on_connect(self, ws) -> Connection:
        peer = ws.remote_address[0] if getattr(ws, "remote_address", None) else "?"
        conn = Connection(id=uuid.uuid4().hex, ws=ws, peer=peer)
        async with self.lock:
            self.dispatcher.register(conn)
            initial = encode_frame("initialState", {
                "environment": self.environment.to_dict(),
                "players": [p.to_dict() for p in self.players.all()],
            })
            # A fresh lock is free, so this does not suspend. Broadcasts to
            # conn queue behind it until the snapshot is written.
            await conn.send_lock.acquire()
        try:
            await ws.send(initial)
        except Exception as e:
            report_send_error(conn, e)
        finally:
            conn.send_lock.release()
        log("WS", f"connect {conn.id} from {peer}")
        return conn

    async def on_set_username(self, conn: Connection, data: Any) -> None:
        username = validate_username(data)
        async with self.lock:
            self._require(conn)
            renamed = conn.id in self.players
            self.players.create(conn.id, username)
            announce = self.dispatcher.to_others(conn, "newPlayer", {"id": conn.id, "username": username})
            existing = self.dispatcher.to_one(
                conn, "existingPlayers", [p.to_dict() for p in self.players.all()])
        log("WS", f"{conn.id} {'renamed' if renamed else 'named'} '{username}'")
        await self.dispatcher.send(announce, existing)

    async def on_disconnect(self, conn: Connection) -> None:
        """Drop every trace of conn and tell the others. Safe to call twice."""
        async with self.lock:
            if conn.closed:
                return
            conn.closed = True
            self.dispatcher.unregister(conn.id)
            for room_id in sorted(conn.rooms):
                try:
                    if self.rooms.leave(conn.id, room_id):
                        log("ROOM", f"'{room_id}' empty, removed")
                except InternalInvariantViolation as e:
                    log("INVARIANT", f"disconnect cleanup of {conn.id}: {e}")
            conn.rooms.clear()
            conn.current_room = None
            self.players.remove(conn.id)
            self.limiter.forget(conn.id)
            notice = self.dispatcher.to_all("deletePlayer", {"id": conn.id})
        log("WS", f"disconnect {conn.id}")
        await self.dispatcher.send(notice)

    # -- rooms --

    async def on_join_room(self, conn: Connection, data: Any) -> None:
        room_id = validate_room_id(data)
        async with self.lock:
            self._require(conn)
            created = room_id not in self.rooms
            room = self.rooms.join(conn.id, room_id)
            conn.rooms.add(room_id)
            conn.current_room = room_id
            members = [self.players.get(cid) for cid in sorted(room.members)]
            state = self.dispatcher.to_one(
                conn, "roomState", {"players": [p.to_dict() for p in members if p is not None]})
        log("ROOM", f"{conn.id} joined '{room_id}'{' (created)' if created else ''}")
        await self.dispatcher.send(state)

    # -- player updates --

    async def on_player_move(self, conn: Connection, data: Any) -> None:
        move = validate_move(data)
        now = self.clock()
        async with self.lock:
            self._require(conn)
            player = self.players.get(conn.id)
            if player is None:
                self._skip(conn, "playerMove")
                return
            if not self.limiter.allow(conn.id, now):
                return
            player.position = move["position"]
            player.rotation = move["rotation"]
            player.action = move["action"]
            moved = self.dispatcher.to_others(conn, "playerMoved", {"id": conn.id, **move})
        if self.config.verbose:
            p = move["position"]
            log("MOVE", f"{conn.id} pos=({p['x']:.2f},{p['y']:.2f},{p['z']:.2f}) action={move['action']}")
        await self.dispatcher.send(moved)

    async def on_shader_update(self, conn: Connection, data: Any) -> None:
        await self._passthrough(conn, "shader_index", "shaderIndex", "shader update",
                                validate_shader_index(data))

    async def on_appearance_update(self, conn: Connection, data: Any) -> None:
        await self._passthrough(conn, "appearance", "appearance", "playerAppearanceChanged",
                                validate_blob(data, "appearance"))

    async def on_animation_update(self, conn: Connection, data: Any) -> None:
        await self._passthrough(conn, "animation", "animation", "playerAnimationChanged",
                                validate_blob(data, "animation"))

    async def _passthrough(self, conn: Connection, attr: str, wire_key: str, event: str, value: Any) -> None:
        async with self.lock:
            self._require(conn)
            player = self.players.get(conn.id)
            if player is None:
                self._skip(conn, event)
                return
            setattr(player, attr, value)
            update = self.dispatcher.to_others(conn, event, {"id": conn.id, wire_key: value})
        await self.dispatcher.send(update)

    # -- shared state --

    async def on_audio_sync(self, conn: Connection, data: Any) -> None:
        sync = validate_audio_sync(data)
        async with self.lock:
            self._require(conn)
            room_id = conn.current_room
            if room_id is None:
                self._skip(conn, "audioSync")
                return
            room = self.rooms.get(room_id)
            if room is None or conn.id not in room.members:
                raise InternalInvariantViolation(
                    f"current room '{room_id}' of {conn.id} has no such membership")
            relay = self.dispatcher.to_room(room, conn, "audioSync", sync)
        await self.dispatcher.send(relay)

    async def on_environment_update(self, conn: Connection, data: Any) -> None:
        patch, ignored = validate_environment_patch(data)
        if ignored:
            log("ENV", f"{conn.id} ignored unknown keys {ignored}")
        if not patch:
            return
        async with self.lock:
            self._require(conn)
            self.environment.apply(patch)
            update = self.dispatcher.to_others(conn, "environmentUpdated", self.environment.to_dict())
        log("ENV", f"{conn.id} set {sorted(patch)}")
        await self.dispatcher.send(update)

    async def reset_environment(self) -> None:
        async with self.lock:
            self.environment.reset()
            update = self.dispatcher.to_all("environmentUpdated", self.environment.to_dict())
        await self.dispatcher.send(update)

    async def on_chat_message(self, conn: Connection, data: Any) -> None:
        text = normalize_chat(data)
        async with self.lock:
            self._require(conn)
            player = self.players.get(conn.id)
            name = player.username if player else UNKNOWN_NAME
            chat = self.dispatcher.to_all("chat message", {"id": conn.id, "name": name, "message": text})
        await self.dispatcher.send(chat)

    # -- plumbing --

    def _require(self, conn: Connection) -> None:
        if conn.closed or self.dispatcher.connections.get(conn.id) is not conn:
            raise UnknownConnection(conn.id)

    def _skip(self, conn: Connection, event: str) -> None:
        if self.config.verbose:
            log("DROP", f"{event} from {conn.id} before username was set")

    async def dispatch(self, conn: Connection, event: str, data: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            log("DROP", f"unknown event '{event}' from {conn.id}")
            return
        try:
            await handler(conn, data)
        except MalformedPayload as e:
            e.event = event
            raise

    async def handle_client(self, ws) -> None:
        conn = await self.on_connect(ws)
        try:
            async for raw in ws:
                try:
                    event, data = parse_envelope(raw)
                    await self.dispatch(conn, event, data)
                except MalformedPayload as e:
                    log("DROP", f"malformed {e.event or 'frame'} from {conn.id}: {e.reason}")
                except UnknownConnection as e:
                    log("DROP", f"event from unregistered connection {e}")
                except InternalInvariantViolation as e:
                    log("INVARIANT", f"!!! closing {conn.id}: {e}")
                    await ws.close(code=1011, reason="internal_error")
                    break
        except ConnectionClosed:
            pass
        finally:
            await self.on_disconnect(conn)


# ------------------------- Admin/Interactive Mode ---------------------------

async def _interactive_loop(server: SyncServer):
    """Read commands from stdin and execute admin actions until EOF."""
    log("ADMIN", "Interactive mode enabled. Type 'help' for commands.")
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            log("ADMIN", "stdin closed; leaving interactive mode")
            return
        line = line.strip()
        if not line:
            continue
        try:
            await handle_admin_command(server, line)
        except Exception as e:
            log("ADMIN", f"error: {e!r}")


async def handle_admin_command(server: SyncServer, line: str) -> None:
    parts = line.split()
    cmd = parts[0].lower()
    args = [a.lower() for a in parts[1:]]
    if cmd == "help":
        print(ADMIN_HELP, flush=True)
    elif cmd == "list":
        if args and args[0] == "rooms":
            _admin_list_rooms(server)
        else:
            _admin_list_players(server)
    elif cmd == "env":
        print(json.dumps(server.environment.to_dict(), indent=2), flush=True)
    elif cmd == "reset" and args == ["env"]:
        await server.reset_environment()
        log("ADMIN", "environment reset to defaults")
    else:
        print("Unknown command. Type 'help' for usage.", flush=True)


ADMIN_HELP = """
help -> displays the various commands

list -> forwards to list players by default
list players -> lists the connected players (named and anonymous)
list rooms -> lists the rooms and their members

env -> prints the shared environment state
reset env -> restores the default environment and pushes it to every client
""".strip()


def _admin_list_players(server: SyncServer):
    conns = list(server.dispatcher.connections.values())
    if not conns:
        log("LIST", "No clients connected")
        return
    log("LIST", "Clients:")
    for conn in conns:
        p = server.players.get(conn.id)
        if p is None:
            print(f" - id={conn.id} ip={conn.peer} (anonymous) rooms={sorted(conn.rooms)}")
            continue
        pos = f"({p.position['x']:.2f},{p.position['y']:.2f},{p.position['z']:.2f})"
        print(f" - id={conn.id} ip={conn.peer} name={p.username} pos={pos} action={p.action} "
              f"shader={p.shader_index} room={conn.current_room or '-'}")


def _admin_list_rooms(server: SyncServer):
    rooms = server.rooms.all()
    if not rooms:
        log("LIST", "No rooms")
        return
    log("LIST", "Rooms:")
    for room in sorted(rooms, key=lambda r: r.id):
        print(f" - {room.id} members={len(room.members)} {sorted(room.members)}")


# ---------------------------------------------------------------------------

def parse_args(argv: Optional[Iterable[str]] = None) -> ServerConfig:
    parser = argparse.ArgumentParser(description="Club 3D real-time sync server (WebSocket)")
    parser.add_argument("--host", default=HOST, help="Bind host (default 0.0.0.0)")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port (default $PORT or 3000)")
    parser.add_argument("--cert", help="TLS certificate file (PEM)")
    parser.add_argument("--key", help="TLS private key file (PEM)")
    parser.add_argument("--origin", action="append", dest="origins",
                        help="Allowed Origin header; repeat for several (default: the club-3d origins)")
    parser.add_argument("--any-origin", action="store_true", help="Accept connections from any origin.")
    parser.add_argument("--ping-interval", type=float, default=PING_INTERVAL_S, help="Heartbeat interval in seconds")
    parser.add_argument("--ping-timeout", type=float, default=PING_TIMEOUT_S, help="Heartbeat timeout in seconds")
    parser.add_argument("--max-size", type=int, default=MAX_FRAME_BYTES, help="Max inbound frame size in bytes")
    parser.add_argument("--move-interval-ms", type=int, default=POSITION_UPDATE_RATE_MS,
                        help="Minimum spacing between accepted moves per client")
    parser.add_argument("--verbose", action="store_true", help="Log every accepted move and every early update.")
    parser.add_argument("--interactive", action="store_true", help="Enable interactive console mode to accept admin commands.")
    args = parser.parse_args(argv)

    if args.any_origin:
        origins = None
    else:
        # Browsers send the origin without a trailing slash
        origins = [o.rstrip("/") for o in (args.origins or ALLOWED_ORIGINS)]
    return ServerConfig(
        host=args.host,
        port=args.port,
        cert=args.cert,
        key=args.key,
        origins=origins,
        ping_interval=args.ping_interval,
        ping_timeout=args.ping_timeout,
        max_size=args.max_size,
        move_interval_ms=args.move_interval_ms,
        verbose=args.verbose,
        interactive=args.interactive,
    )


def build_ssl_context(config: ServerConfig) -> Optional[ssl.SSLContext]:
    if not (config.cert and config.key):
        return None
    try:
        ssl_ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_ctx.load_cert_chain(certfile=config.cert, keyfile=config.key)
        return ssl_ctx
    except (OSError, ssl.SSLError) as e:
        log("WARN", f"Failed to enable TLS: {e}. Continuing without TLS.")
        return None


async def main(argv: Optional[Iterable[str]] = None):
    config = parse_args(argv)
    ssl_ctx = build_ssl_context(config)
    scheme = "wss" if ssl_ctx else "ws"
    server = SyncServer(config)
    origins = "any" if config.origins is None else ",".join(config.origins)
    print(f"Serving on {scheme}://{config.host}:{config.port} move_interval={config.move_interval_ms}ms "
          f"ping={config.ping_interval}s/{config.ping_timeout}s origins={origins} "
          f"interactive={'on' if config.interactive else 'off'}", flush=True)
    async with websockets.serve(
        server.handle_client,
        config.host,
        config.port,
        ssl=ssl_ctx,
        origins=config.origins,
        ping_interval=config.ping_interval,
        ping_timeout=config.ping_timeout,
        max_size=config.max_size,
    ):
        tasks = []
        if config.interactive:
            tasks.append(asyncio.create_task(_interactive_loop(server)))
        try:
            await asyncio.Future()
        except asyncio.CancelledError:
            pass
        finally:
            for task in tasks:
                task.cancel()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    run()
