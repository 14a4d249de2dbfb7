"In-process kernel: the real supervisor and channels driven by a jupyter_client client, with a scripted engine."
import asyncio, socket, threading
import pytest, zmq
from jupyter_client.blocking import BlockingKernelClient
from wirekernel.config import ConnectionConfig, KernelSettings, port_names
from wirekernel.engine import ExecuteOutcome
from wirekernel.errors import ExecutionError, TransportError
from wirekernel.kernel import KernelSupervisor
from .conftest import KEY
from .fakes import fail, until_cancelled
from .kernel_utils import TIMEOUT, iopub_msgs, iopub_streams, parent_id, statuses, wait_for_msg


def _free_ports()->dict:
    socks = [socket.socket() for _ in port_names]
    try:
        for s in socks: s.bind(("127.0.0.1", 0))
        return {name: s.getsockname()[1] for name, s in zip(port_names, socks)}
    finally:
        for s in socks: s.close()


class _Running:
    def __init__(self, sup:KernelSupervisor):
        self.sup, self.exit_code = sup, None
        self.thread = threading.Thread(target=self.run, daemon=True)

    def run(self): self.exit_code = self.sup.start()


@pytest.fixture
def kernel(engine):
    info = dict(transport="tcp", ip="127.0.0.1", key=KEY.decode(), signature_scheme="hmac-sha256") | _free_ports()
    sup = KernelSupervisor(ConnectionConfig.from_dict(info), engine=engine, settings=KernelSettings())
    running = _Running(sup)
    running.thread.start()
    kc = BlockingKernelClient()
    kc.load_connection_info(info)
    kc.start_channels()
    try:
        kc.wait_for_ready(timeout=TIMEOUT)
        yield running, kc
    finally:
        kc.stop_channels()
        if running.thread.is_alive():
            sup.stop()
            running.thread.join(TIMEOUT)


def _ping(sup:KernelSupervisor)->bytes:
    sock = zmq.Context.instance().socket(zmq.REQ)
    sock.linger = 0
    sock.rcvtimeo = 2000
    try:
        sock.connect(sup.config.addr(sup.config.hb_port))
        sock.send(b"ping")
        return sock.recv()
    finally: sock.close(0)


def test_kernel_info_on_shell(kernel):
    _, kc = kernel
    msg_id = kc.kernel_info()
    reply = kc.shell_reply(msg_id)
    content = reply["content"]
    assert (content["status"], content["implementation"]) == ("ok", "wirekernel")
    assert content["protocol_version"] == reply["header"]["version"]
    assert content["language_info"]["name"] == "unknown"
    assert statuses(kc.iopub_drain(msg_id)) == ["busy", "idle"]


def test_kernel_info_on_control(kernel):
    _, kc = kernel
    reply = kc.control_reply(kc.control_send("kernel_info_request"))
    assert reply["msg_type"] == "kernel_info_reply"
    assert reply["content"]["implementation"] == "wirekernel"


def test_execute_print(kernel):
    _, kc = kernel
    msg_id, reply, outputs = kc.exec_ok("print(1)")
    assert reply["content"]["execution_count"] == 1
    assert [m["msg_type"] for m in outputs] == ["status", "execute_input", "stream", "status"]
    assert statuses(outputs) == ["busy", "idle"]
    assert iopub_streams(outputs)[0]["content"] == dict(name="stdout", text="1\n")
    assert all(parent_id(m) == msg_id for m in outputs)


def test_counter_across_errors(kernel, engine):
    _, kc = kernel
    engine.scripts["boom"] = fail()
    counts = [kc.exec_drain(code, stop_on_error=False)[1]["content"]["execution_count"] for code in ("print(1)", "boom", "print(2)")]
    assert counts == [1, 2, 3]


def test_error_output(kernel, engine):
    _, kc = kernel
    engine.scripts["boom"] = fail("NameError", "name 'x' is not defined")
    _, reply, outputs = kc.exec_drain("boom")
    assert reply["content"]["status"] == "error"
    assert reply["content"]["ename"] == "NameError"
    err = iopub_msgs(outputs, "error")
    assert len(err) == 1 and err[0]["content"]["evalue"] == "name 'x' is not defined"


def test_silent_execution(kernel):
    _, kc = kernel
    _, reply, outputs = kc.exec_ok("print(1)", silent=True)
    assert reply["content"]["execution_count"] == 0
    assert [m["msg_type"] for m in outputs] == ["status", "status"]


def test_stop_on_error_aborts_queued(kernel, engine):
    _, kc = kernel
    async def slow_fail(request, sink, cancel):
        await asyncio.sleep(0.3)
        return ExecuteOutcome(error=ExecutionError("ValueError", "late", []))
    engine.scripts["slow"] = slow_fail
    ids = [kc.execute(code) for code in ("slow", "print(2)", "print(3)")]
    replies = [kc.shell_reply(i)["content"] for i in ids]
    assert [r["status"] for r in replies] == ["error", "aborted", "aborted"]
    assert [r["execution_count"] for r in replies] == [1, 1, 1]
    _, reply, _ = kc.exec_ok("print(4)")
    assert reply["content"]["execution_count"] == 2


def test_interrupt_request(kernel, engine):
    running, kc = kernel
    engine.scripts["loop"] = until_cancelled
    msg_id = kc.execute("loop")
    wait_for_msg(kc.get_iopub_msg, lambda m: m["msg_type"] == "stream" and parent_id(m) == msg_id)
    assert kc.interrupt_request()["content"]["status"] == "ok"
    reply = kc.shell_reply(msg_id)["content"]
    assert (reply["status"], reply["ename"]) == ("error", "KeyboardInterrupt")
    assert _ping(running.sup) == b"ping"
    kc.exec_ok("print(1)")
    assert running.sup.state.pending is None


def test_interrupt_when_idle(kernel):
    _, kc = kernel
    assert kc.interrupt_request()["content"]["status"] == "ok"
    kc.exec_ok("print(1)")


def test_input_round_trip(kernel, engine):
    _, kc = kernel
    engine.scripts["ask"] = lambda r, s, c: s.stream("stdout", s.request_input("name? ") + "\n")
    msg_id = kc.execute("ask", allow_stdin=True)
    req = kc.stdin_channel.get_msg(timeout=TIMEOUT)
    assert req["msg_type"] == "input_request"
    assert req["content"]["prompt"] == "name? "
    assert parent_id(req) == msg_id
    kc.input("ada")
    assert kc.shell_reply(msg_id)["content"]["status"] == "ok"
    assert iopub_streams(kc.iopub_drain(msg_id))[0]["content"]["text"] == "ada\n"


def test_interrupt_during_input(kernel, engine):
    _, kc = kernel
    engine.scripts["ask"] = lambda r, s, c: s.stream("stdout", s.request_input("name? ") + "\n")
    msg_id = kc.execute("ask", allow_stdin=True)
    kc.stdin_channel.get_msg(timeout=TIMEOUT)
    kc.interrupt_request()
    reply = kc.shell_reply(msg_id)["content"]
    assert (reply["status"], reply["ename"]) == ("error", "KeyboardInterrupt")


def test_introspection(kernel):
    _, kc = kernel
    content = kc.shell_reply(kc.complete("pr", 2))["content"]
    assert (content["status"], content["matches"], content["cursor_start"], content["cursor_end"]) == ("ok", ["print", "property"], 0, 2)
    content = kc.shell_reply(kc.inspect("pow", 3))["content"]
    assert content["found"] is True
    assert content["data"]["text/plain"] == "pow (detail 0)"
    assert kc.shell_reply(kc.is_complete("if x:"))["content"]["status"] == "incomplete"
    content = kc.shell_reply(kc.history(hist_access_type="tail", n=5))["content"]
    assert (content["status"], content["history"]) == ("ok", [])


def test_introspection_has_no_status_by_default(kernel):
    _, kc = kernel
    complete_id = kc.complete("pr", 2)
    kc.shell_reply(complete_id)
    info_id = kc.kernel_info()
    kc.shell_reply(info_id)
    seen = []
    wait_for_msg(kc.get_iopub_msg, lambda m: seen.append(m) or (parent_id(m) == info_id and m["content"].get("execution_state") == "idle"))
    assert [m for m in seen if parent_id(m) == complete_id] == []


def test_connect_and_comm_info(kernel):
    running, kc = kernel
    content = kc.shell_reply(kc.shell_send("connect_request"))["content"]
    assert {name: content[name] for name in port_names} == {name: getattr(running.sup.config, name) for name in port_names}
    content = kc.shell_reply(kc.comm_info())["content"]
    assert (content["status"], content["comms"]) == ("ok", {})


def test_unsupported_requests(kernel):
    _, kc = kernel
    reply = kc.shell_reply(kc.shell_send("interrupt_request"))
    assert reply["msg_type"] == "interrupt_reply"
    assert (reply["content"]["status"], reply["content"]["ename"]) == ("error", "UnsupportedRequest")
    reply = kc.control_reply(kc.control_send("execute_request", code="print(1)"))
    assert reply["msg_type"] == "execute_reply"
    assert reply["content"]["ename"] == "UnsupportedRequest"


def test_heartbeat(kernel):
    running, _ = kernel
    assert _ping(running.sup) == b"ping"


def test_shutdown(kernel):
    running, kc = kernel
    msg_id = kc.control_send("shutdown_request", restart=False)
    reply = kc.control_reply(msg_id)
    assert reply["content"] == dict(status="ok", restart=False)
    running.thread.join(TIMEOUT)
    assert not running.thread.is_alive()
    assert running.exit_code == 0


def test_shutdown_during_execution(kernel, engine):
    running, kc = kernel
    engine.scripts["loop"] = until_cancelled
    msg_id = kc.execute("loop")
    wait_for_msg(kc.get_iopub_msg, lambda m: m["msg_type"] == "stream" and parent_id(m) == msg_id)
    kc.control_reply(kc.control_send("shutdown_request"))
    running.thread.join(TIMEOUT)
    assert not running.thread.is_alive()
    assert running.exit_code == 0


def test_channel_failure_rebinds_then_exits(kernel):
    running, _ = kernel
    sup = running.sup
    sup.hb.stop()
    sup.hb.join(TIMEOUT)
    sup.channel_failed(TransportError("hb", zmq.ZMQError(zmq.ETERM)))
    assert sup.hb.ready.wait(TIMEOUT)
    assert _ping(sup) == b"ping"
    sup.channel_failed(TransportError("hb", zmq.ZMQError(zmq.ETERM)))
    running.thread.join(TIMEOUT)
    assert not running.thread.is_alive()
    assert running.exit_code == 1
