"""Tests for the execution session, its timers, the launcher and the registry."""

from __future__ import annotations

import asyncio
import json
import signal
import textwrap
from typing import Any, Dict, List, Optional

import pytest

from coderunner.compiler import RunCommand
from coderunner.config import RunLimits
from coderunner.errors import InvalidTransition, LaunchError, SessionBusy, UnknownSession
from coderunner.launcher import Launcher
from coderunner.models import ClientMessage, PrepareRequest, SourceFile
from coderunner.service import RunnerService
from coderunner.session import BudgetTimer, Channel, ExecutionSession, Phase


LIMITS = RunLimits(
    cpu_seconds=20,
    memory_bytes=0,
    file_size_bytes=16 * 1024 * 1024,
    wall_clock_ms=10_000,
    input_wait_ms=10_000,
)


class FakeChannel(Channel):
    """In-memory channel: records what the session sends, replays queued input."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        self.sent.append(message)
        return True

    async def receive(self) -> Optional[str]:
        return await self.inbox.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True

    def push(self, **message: Any) -> None:
        self.inbox.put_nowait(json.dumps(message))

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == kind]

    def text(self, stream: str) -> str:
        return "".join(m["data"] for m in self.of_type(stream))

    async def wait_for(self, kind: str, timeout: float = 10.0) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            found = self.of_type(kind)
            if found:
                return found[0]
            await asyncio.sleep(0.02)
        raise AssertionError(f"no {kind!r} message in {self.sent!r}")


async def _prepared(config, source: str, **request):
    service = RunnerService(config)
    response = await service.prepare(
        PrepareRequest(files=[SourceFile(path="main.py", content=textwrap.dedent(source))], **request),
        "python",
    )
    assert response.ok, response.compile_log
    return service, service.attach(response.token)


async def test_budget_timer_pause_and_resume():
    fired = []
    timer = BudgetTimer(0.3, lambda: fired.append(True))
    timer.start()
    await asyncio.sleep(0.1)
    timer.pause()
    assert 0.1 <= timer.remaining <= 0.25
    await asyncio.sleep(0.4)
    assert not fired
    timer.resume()
    await asyncio.sleep(0.4)
    assert fired == [True]
    assert timer.expired
    assert timer.remaining == 0


async def test_budget_timer_cancel():
    fired = []
    timer = BudgetTimer(0.05, lambda: fired.append(True))
    timer.start()
    timer.cancel()
    await asyncio.sleep(0.15)
    assert not fired
    assert not timer.armed


async def test_launcher_kill_is_idempotent_and_takes_the_group(tmp_path):
    handle = await Launcher().spawn(["sh", "-c", "sleep 30 & sleep 30"], tmp_path, LIMITS)
    handle.kill()
    handle.kill()
    assert await asyncio.wait_for(handle.wait(), 5) == -signal.SIGKILL
    # The background sleep shared the pipes; EOF means it died as well.
    assert await asyncio.wait_for(handle.stdout.read(), 5) == b""
    handle.kill()
    assert handle.killed


async def test_launcher_reports_missing_binary(tmp_path):
    with pytest.raises(LaunchError):
        await Launcher().spawn(["coderunner-no-such-binary"], tmp_path, LIMITS)


async def test_stdin_round_trip(config):
    service, session = await _prepared(config, 'name = input("Name? ")\nprint("Hello, " + name)\n')
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))

    await channel.wait_for("stdin_req")
    assert session.phase is Phase.WAITING_INPUT
    channel.push(type="stdin", data="Ada\n")
    await asyncio.wait_for(run, 10)

    assert "Name? " in channel.text("stdout")
    assert "Hello, Ada\n" in channel.text("stdout")
    (exit_msg,) = channel.of_type("exit")
    assert exit_msg["code"] == 0
    assert exit_msg["reason"] == "exited"
    assert set(exit_msg["metrics"]) == {"compileMs", "startMs", "execMs", "totalMs"}
    assert channel.sent[-1] is exit_msg
    assert channel.closed
    assert session.phase is Phase.CLOSED
    assert not session.workspace.root.exists()
    assert session.token not in service.registry
    assert session.fault is None


async def test_stdin_before_request_goes_straight_to_the_pipe(config):
    _, session = await _prepared(config, "import time\ntime.sleep(0.5)\nprint(input().upper())\n")
    channel = FakeChannel()
    channel.push(type="stdin", data="early\n")
    await asyncio.wait_for(session.run(channel), 10)
    assert channel.text("stdout") == "EARLY\n"
    assert channel.of_type("stdin_req") == []
    assert channel.of_type("exit")[0]["reason"] == "exited"


async def test_kill_twice_sends_one_exit(config):
    _, session = await _prepared(config, "import time\nprint('up', flush=True)\ntime.sleep(30)\n")
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))
    await channel.wait_for("stdout")
    channel.push(type="kill")
    channel.push(type="kill")
    await asyncio.wait_for(run, 10)
    exits = channel.of_type("exit")
    assert len(exits) == 1
    assert exits[0]["reason"] == "killed"
    assert exits[0]["code"] == -signal.SIGKILL


async def test_kill_is_not_held_up_by_unread_stdin(config):
    _, session = await _prepared(
        config, "import time\nprint('up', flush=True)\ntime.sleep(30)\n", timeLimitMs=5000
    )
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))
    await channel.wait_for("stdout")
    megabyte = "x" * (1024 * 1024)
    for _ in range(5):
        channel.push(type="stdin", data=megabyte)
    channel.push(type="kill")
    loop = asyncio.get_running_loop()
    started = loop.time()
    await asyncio.wait_for(run, 10)
    assert loop.time() - started < 3
    assert "Input dropped" in channel.text("stderr")
    (exit_msg,) = channel.of_type("exit")
    assert exit_msg["reason"] == "killed"


async def test_hard_timeout(config):
    _, session = await _prepared(config, "while True:\n    pass\n", timeLimitMs=500)
    channel = FakeChannel()
    await asyncio.wait_for(session.run(channel), 10)
    assert "Execution timed out after 500 ms." in channel.text("stderr")
    (exit_msg,) = channel.of_type("exit")
    assert exit_msg["reason"] == "timeout"
    assert not session.workspace.root.exists()
    assert session.fault.reason == "timeout"


async def test_input_wait_timeout(config):
    _, session = await _prepared(config, "input()\n", inputWaitMs=300)
    channel = FakeChannel()
    await asyncio.wait_for(session.run(channel), 10)
    assert channel.of_type("stdin_req")
    assert "Input wait timed out." in channel.text("stderr")
    assert channel.of_type("exit")[0]["reason"] == "input_timeout"


async def test_waiting_for_input_does_not_consume_the_budget(config):
    _, session = await _prepared(config, "print(input())\n", timeLimitMs=1000)
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))
    await channel.wait_for("stdin_req")
    await asyncio.sleep(1.5)
    channel.push(type="stdin", data="still here\n")
    await asyncio.wait_for(run, 10)
    assert channel.text("stdout") == "still here\n"
    assert channel.of_type("exit")[0]["reason"] == "exited"


async def test_disconnect_kills_the_program(config):
    _, session = await _prepared(config, "input()\n")
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))
    await channel.wait_for("stdin_req")
    channel.inbox.put_nowait(None)
    await asyncio.wait_for(run, 10)
    assert channel.of_type("exit")[0]["reason"] == "disconnected"
    assert not session.workspace.root.exists()


async def test_ping_and_malformed_messages(config):
    _, session = await _prepared(config, "print(input())\n")
    channel = FakeChannel()
    run = asyncio.create_task(session.run(channel))
    await channel.wait_for("stdin_req")
    channel.inbox.put_nowait("not json")
    channel.inbox.put_nowait(json.dumps({"type": "bogus"}))
    channel.inbox.put_nowait(json.dumps(["stdin"]))
    channel.push(type="run")
    channel.push(type="ping")
    await channel.wait_for("pong")
    channel.push(type="stdin", data="ok\n")
    await asyncio.wait_for(run, 10)
    assert channel.text("stdout") == "ok\n"


async def test_launch_error(config, store):
    ws = store.create([SourceFile(path="main.py", content="")])
    session = ExecutionSession(ws, "python", LIMITS, store, Launcher())
    session.begin_compile()
    session.compiled(RunCommand(argv=["coderunner-no-such-binary"], cwd=ws.root), 3)
    channel = FakeChannel()
    await session.run(channel)
    assert "coderunner-no-such-binary" in channel.text("stderr")
    (exit_msg,) = channel.of_type("exit")
    assert exit_msg["code"] == -1
    assert exit_msg["reason"] == "launch_error"
    assert exit_msg["metrics"]["compileMs"] == 3
    assert not ws.root.exists()


async def test_python_plot_is_sent_as_image(config):
    pytest.importorskip("matplotlib")
    config.wall_clock_ms = 60_000
    source = """
        import matplotlib.pyplot as plt
        plt.plot([1, 2, 3], [1, 4, 9])
        plt.show()
        print("done")
    """
    _, session = await _prepared(config, source)
    channel = FakeChannel()
    await asyncio.wait_for(session.run(channel), 30)
    (image,) = channel.of_type("image")
    assert image["name"] == "figure-1.png"
    assert image["data"].startswith("data:image/png;base64,")
    assert "[[CTRL]]" not in channel.text("stdout")
    assert channel.text("stdout") == "done\n"


def test_illegal_transition(store):
    ws = store.create([SourceFile(path="main.py", content="")])
    session = ExecutionSession(ws, "python", LIMITS, store, Launcher())
    with pytest.raises(InvalidTransition):
        session.transition(Phase.RUNNING)
    session.begin_compile()
    session.fail()
    assert not ws.root.exists()
    with pytest.raises(InvalidTransition):
        session.transition(Phase.READY)


async def test_registry_claim_and_expire(config):
    service = RunnerService(config)
    request = PrepareRequest(files=[SourceFile(path="main.py", content="print(1)\n")])
    attached = await service.prepare(request, "python")
    stale = await service.prepare(request, "python")

    with pytest.raises(UnknownSession):
        service.attach("no-such-token")
    with pytest.raises(UnknownSession):
        service.attach(None)
    service.attach(attached.token)
    with pytest.raises(SessionBusy):
        service.attach(attached.token)

    stale_session = service.registry._sessions[stale.token]
    expired = service.registry.expire(ttl_secs=60, now=stale_session.created_at + 61)
    assert expired == [stale_session]
    assert stale.token not in service.registry
    assert attached.token in service.registry
    assert not stale_session.workspace.root.exists()
    assert stale_session.phase is Phase.CLOSED

    service.registry.drain()


async def test_unexpected_start_error_still_ends_with_exit(config, monkeypatch):
    service = RunnerService(config)

    async def broken(*args, **kwargs):
        raise OSError("shim not writable")

    monkeypatch.setattr(service.adapters["python"], "compile", broken)
    channel = FakeChannel()
    message = ClientMessage.model_validate(
        {"type": "start", "language": "python", "files": [{"path": "main.py", "content": ""}]}
    )
    await service.run_on_channel(channel, message)
    assert channel.text("stderr") == "internal error\n"
    (exit_msg,) = channel.of_type("exit")
    assert exit_msg["reason"] == "internal_error"
    assert channel.sent[-1] is exit_msg
    assert channel.closed
    assert len(service.registry) == 0
