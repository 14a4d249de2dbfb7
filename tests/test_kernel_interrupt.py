import zmq
from .kernel_utils import *


def _interrupted(kc, msg_id)->dict:
    reply = kc.shell_reply(msg_id, timeout=20)
    assert reply["content"]["status"] == "error"
    assert reply["content"]["ename"] == "KeyboardInterrupt"
    wait_for_status(kc, "idle")
    return reply


def test_interrupt_request_sync_cell():
    with start_kernel() as (_, kc):
        msg_id = kc.execute("import time; time.sleep(30)")
        wait_for_status(kc, "busy")
        assert kc.interrupt_request()["content"]["status"] == "ok"
        _interrupted(kc, msg_id)
        _, reply, _ = kc.exec_ok("print('still here')")
        assert reply["content"]["execution_count"] == 2


def test_signal_interrupt():
    with start_kernel() as (km, kc):
        msg_id = kc.execute("import time; time.sleep(30)")
        wait_for_status(kc, "busy")
        km.interrupt_kernel()
        _interrupted(kc, msg_id)
        kc.exec_ok("1+1")


def test_interrupt_async_cell():
    with start_kernel() as (_, kc):
        msg_id = kc.execute("import asyncio\nawait asyncio.sleep(30)")
        wait_for_status(kc, "busy")
        kc.interrupt_request()
        _interrupted(kc, msg_id)
        kc.exec_ok("1+1")


def test_interrupt_when_idle_is_harmless():
    with start_kernel() as (km, kc):
        assert kc.interrupt_request()["content"]["status"] == "ok"
        km.interrupt_kernel()
        _, reply, _ = kc.exec_ok("1+1")
        assert reply["content"]["execution_count"] == 1


def test_heartbeat_during_long_execution():
    with start_kernel() as (km, kc):
        msg_id = kc.execute("import time; time.sleep(30)")
        wait_for_status(kc, "busy")
        sock = hb_socket(km, zmq.Context.instance())
        try:
            sock.send(b"alive?")
            assert sock.recv() == b"alive?"
        finally: sock.close(0)
        kc.interrupt_request()
        _interrupted(kc, msg_id)
