"Wire codec: Jupyter v5 multipart envelope framing with HMAC signing, built on `jupyter_client.session.Session`."
import json, logging, threading
from dataclasses import dataclass, field
from enum import Enum
from jupyter_client.jsonutil import json_default
from jupyter_client.session import DELIM, Session, extract_header, msg_header, new_id
from .errors import ProtocolError

log = logging.getLogger("wirekernel.codec")


class MsgType(str, Enum):
    EXECUTE_REQUEST = "execute_request"
    EXECUTE_REPLY = "execute_reply"
    INSPECT_REQUEST = "inspect_request"
    INSPECT_REPLY = "inspect_reply"
    COMPLETE_REQUEST = "complete_request"
    COMPLETE_REPLY = "complete_reply"
    IS_COMPLETE_REQUEST = "is_complete_request"
    IS_COMPLETE_REPLY = "is_complete_reply"
    HISTORY_REQUEST = "history_request"
    HISTORY_REPLY = "history_reply"
    KERNEL_INFO_REQUEST = "kernel_info_request"
    KERNEL_INFO_REPLY = "kernel_info_reply"
    CONNECT_REQUEST = "connect_request"
    CONNECT_REPLY = "connect_reply"
    COMM_INFO_REQUEST = "comm_info_request"
    COMM_INFO_REPLY = "comm_info_reply"
    INTERRUPT_REQUEST = "interrupt_request"
    INTERRUPT_REPLY = "interrupt_reply"
    SHUTDOWN_REQUEST = "shutdown_request"
    SHUTDOWN_REPLY = "shutdown_reply"
    INPUT_REQUEST = "input_request"
    INPUT_REPLY = "input_reply"
    STATUS = "status"
    EXECUTE_INPUT = "execute_input"
    STREAM = "stream"
    EXECUTE_RESULT = "execute_result"
    DISPLAY_DATA = "display_data"
    UPDATE_DISPLAY_DATA = "update_display_data"
    CLEAR_OUTPUT = "clear_output"
    ERROR = "error"

    def __str__(self): return self.value

    @property
    def is_request(self)->bool: return self.value.endswith("_request")

    @property
    def reply_type(self)->"MsgType":
        if not self.is_request: raise ValueError(f"{self.value} has no reply type")
        return MsgType(self.value.replace("_request", "_reply"))


def pack(obj)->bytes:
    "JSON-encode `obj` with sorted keys so equal messages always sign identically."
    return json.dumps(obj, default=json_default, ensure_ascii=False, allow_nan=False,
        sort_keys=True).encode("utf8", errors="surrogateescape")


@dataclass(frozen=True)
class Message:
    header:dict
    parent_header:dict = field(default_factory=dict)
    metadata:dict = field(default_factory=dict)
    content:dict = field(default_factory=dict)
    identities:tuple = ()
    buffers:tuple = ()
    signature:bytes = field(default=b"", compare=False)

    @property
    def msg_type(self)->MsgType: return MsgType(self.header["msg_type"])

    @property
    def msg_id(self)->str: return self.header.get("msg_id", "")

    @property
    def parent_id(self)->str|None: return self.parent_header.get("msg_id")

    def short_id(self)->str: return self.msg_id[:8] or "?"

    def to_dict(self)->dict:
        "Nested message dict in the shape `jupyter_client` serializes."
        return dict(header=self.header, msg_id=self.msg_id, msg_type=self.header.get("msg_type"),
            parent_header=self.parent_header, metadata=self.metadata, content=self.content, buffers=list(self.buffers))


def _as_bytes(frame)->bytes:
    if isinstance(frame, bytes): return frame
    if hasattr(frame, "bytes"): return bytes(frame.bytes)
    return bytes(frame)


class MessageCodec:
    "Encode/decode `Message` values to signed multipart frames."
    def __init__(self, key:bytes=b"", signature_scheme:str="hmac-sha256", username:str="kernel", session_id:str|None=None):
        kw = dict(session=session_id) if session_id else {}
        self.session = Session(key=key, signature_scheme=signature_scheme, username=username, pack=pack, **kw)
        self.lock = threading.Lock()

    @classmethod
    def from_config(cls, config, **kwargs)->"MessageCodec":
        return cls(key=config.key_bytes, signature_scheme=config.signature_scheme, **kwargs)

    @property
    def session_id(self)->str: return self.session.session

    @property
    def signing(self)->bool: return self.session.auth is not None

    def new_message(self, msg_type:MsgType|str, content:dict|None=None, parent:"Message|dict|None"=None,
        metadata:dict|None=None, identities=(), buffers=())->Message:
        "Build a message with a fresh header; `parent` may be a Message, a message dict or a header."
        header = msg_header(new_id(), str(msg_type), self.session.username, self.session.session)
        if isinstance(parent, Message): parent_header = dict(parent.header)
        elif parent: parent_header = extract_header(parent)
        else: parent_header = {}
        return Message(header=header, parent_header=parent_header, metadata=dict(metadata or {}), content=dict(content or {}),
            identities=tuple(identities or ()), buffers=tuple(bytes(b) for b in buffers or ()))

    def encode(self, msg:Message)->list[bytes]:
        "Serialize `msg` to `[idents..., DELIM, signature, header, parent, metadata, content, buffers...]`."
        with self.lock: frames = self.session.serialize(msg.to_dict(), ident=list(msg.identities))
        return frames + [bytes(b) for b in msg.buffers]

    def sign(self, msg:Message)->bytes:
        frames = self.encode(msg)
        return frames[frames.index(DELIM) + 1]

    def decode(self, frames)->Message:
        "Parse and verify raw frames; raises `ProtocolError` on any malformed or unsigned input."
        frames = [_as_bytes(f) for f in frames]
        try: idents, rest = self.session.feed_identities(frames)
        except ValueError as err: raise ProtocolError("missing <IDS|MSG> delimiter", len(frames)) from err
        if len(rest) < 5: raise ProtocolError(f"expected at least 5 frames after delimiter, got {len(rest)}", len(frames))
        with self.lock:
            try: raw = self.session.deserialize(rest, content=True)
            except ValueError as err: raise ProtocolError(str(err), len(frames)) from err
            except (TypeError, KeyError, AttributeError) as err: raise ProtocolError(f"malformed message: {err!r}", len(frames)) from err
        for part in ("header", "parent_header", "metadata", "content"):
            if not isinstance(raw.get(part), dict): raise ProtocolError(f"{part} is not a JSON object", len(frames))
        msg_type = raw["header"].get("msg_type")
        try: MsgType(msg_type)
        except ValueError as err: raise ProtocolError(f"unknown msg_type {msg_type!r}", len(frames)) from err
        return Message(header=raw["header"], parent_header=raw["parent_header"], metadata=raw["metadata"],
            content=raw["content"], identities=tuple(idents), buffers=tuple(bytes(b) for b in raw["buffers"]), signature=rest[0])

    def try_decode(self, frames, channel:str="?")->Message|None:
        "Decode `frames`, logging and dropping anything that fails verification."
        try: return self.decode(frames)
        except ProtocolError as err:
            if err.reason.startswith("Duplicate Signature"): log.debug("%s: dropped replayed message", channel)
            else: log.warning("%s: dropped message: %s", channel, err.reason)
            return None
