"Debug infrastructure for wirekernel with tiered logging and faulthandler support."
import faulthandler, logging, os, signal, sys, threading

def envbool(name: str)->bool:
    v = (os.environ.get(name) or "").strip().lower()
    return v not in ("", "0", "false", "no")

enabled = envbool("WIREKERNEL_DEBUG")
trace_msgs = envbool("WIREKERNEL_DEBUG_MSGS")
_dbg_lock = threading.Lock()

def dbg(*args, **kw):
    if enabled:
        with _dbg_lock: print("[wirekernel]", *args, **kw, file=sys.__stderr__, flush=True)

_log_fmt = "%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"

def setup():
    "Route `wirekernel.*` logs to the real stderr; in debug mode also enable DEBUG level, faulthandler and SIGUSR1 dumps."
    pkg = logging.getLogger("wirekernel")
    if not pkg.handlers:
        # user code replaces sys.stderr, so bind to the process stream
        handler = logging.StreamHandler(sys.__stderr__)
        handler.setFormatter(logging.Formatter(_log_fmt))
        pkg.addHandler(handler)
        pkg.propagate = False
    pkg.setLevel(logging.DEBUG if enabled else logging.WARNING)
    if not enabled: return
    faulthandler.enable(file=sys.__stderr__)
    if hasattr(signal, "SIGUSR1"): faulthandler.register(signal.SIGUSR1, file=sys.__stderr__)

def tlog(logger, label:str, msg):
    "Log one traced message at DEBUG when `WIREKERNEL_DEBUG_MSGS` is set."
    if trace_msgs: logger.debug("%s %s id=%s", label, msg.header.get("msg_type"), msg.short_id())
