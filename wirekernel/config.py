import json, os
from dataclasses import dataclass
from fastcore.basics import str2bool
from .errors import ConfigError

port_names = ("shell_port", "iopub_port", "stdin_port", "control_port", "hb_port")
channel_ports = dict(shell="shell_port", iopub="iopub_port", stdin="stdin_port", control="control_port", hb="hb_port")


@dataclass(frozen=True)
class ConnectionConfig:
    "Resolved connection descriptor; immutable once the kernel starts."
    transport:str
    ip:str
    shell_port:int
    iopub_port:int
    stdin_port:int
    control_port:int
    hb_port:int
    key:str = ""
    signature_scheme:str = "hmac-sha256"
    kernel_name:str = ""

    @classmethod
    def from_dict(cls, data:dict)->"ConnectionConfig":
        "Build a config from a parsed connection descriptor."
        missing = [k for k in ("transport", "ip", *port_names) if k not in data]
        if missing: raise ConfigError(f"connection info missing fields: {', '.join(missing)}")
        try: ports = {name: int(data[name]) for name in port_names}
        except (TypeError, ValueError) as err: raise ConfigError(f"invalid port in connection info: {err}") from err
        key = data.get("key") or ""
        if isinstance(key, bytes): key = key.decode("utf-8")
        scheme = data.get("signature_scheme") or "hmac-sha256"
        if not scheme.startswith("hmac-"): raise ConfigError(f"unsupported signature_scheme {scheme!r}")
        return cls(transport=data["transport"], ip=data["ip"], key=key, signature_scheme=scheme,
            kernel_name=data.get("kernel_name", ""), **ports)

    @classmethod
    def from_file(cls, path:str)->"ConnectionConfig":
        "Load connection info from JSON connection file at `path`."
        try:
            with open(path, encoding="utf-8") as f: data = json.load(f)
        except (OSError, ValueError) as err: raise ConfigError(f"cannot read connection file {path}: {err}") from err
        if not isinstance(data, dict): raise ConfigError(f"connection file {path} does not hold a JSON object")
        return cls.from_dict(data)

    @property
    def key_bytes(self)->bytes: return self.key.encode("utf-8")

    def port(self, channel:str)->int: return getattr(self, channel_ports[channel])

    def addr(self, port:int)->str:
        if self.transport == "ipc": return f"ipc://{self.ip}-{port}"
        return f"{self.transport}://{self.ip}:{port}"


def env_float(name:str, default:float)->float:
    "Return float env var `name`, or `default` on missing/invalid."
    raw = os.environ.get(name)
    if raw is None: return default
    try: return float(raw)
    except ValueError: return default


def env_int(name:str, default:int|None)->int|None:
    raw = os.environ.get(name)
    if raw is None: return default
    try: return int(raw)
    except ValueError: return default


def env_flag(name:str)->bool|None:
    "Parse env var `name` to bool; return None if unset/invalid."
    raw = os.environ.get(name)
    if raw is None: return None
    try: return bool(str2bool(raw))
    except (TypeError, ValueError): return None


@dataclass
class KernelSettings:
    "Runtime tuning knobs, read from `WIREKERNEL_*` environment variables."
    iopub_qmax:int = 10000
    iopub_sndhwm:int|None = None
    stop_on_error_timeout:float = 0.0
    shutdown_linger:int = 1000
    introspection_status:bool = False
    use_jedi:bool|None = None
    experimental_completions:bool = True

    @classmethod
    def from_env(cls, prefix:str="WIREKERNEL_")->"KernelSettings":
        flag = lambda name, default: (v if (v := env_flag(prefix + name)) is not None else default)
        return cls(iopub_qmax=env_int(prefix + "IOPUB_QMAX", 10000) or 10000,
            iopub_sndhwm=env_int(prefix + "IOPUB_SNDHWM", None),
            stop_on_error_timeout=env_float(prefix + "STOP_ON_ERROR_TIMEOUT", 0.0),
            shutdown_linger=env_int(prefix + "SHUTDOWN_LINGER", 1000),
            introspection_status=flag("INTROSPECTION_STATUS", False),
            use_jedi=env_flag(prefix + "USE_JEDI"),
            experimental_completions=flag("EXPERIMENTAL_COMPLETIONS", True))
