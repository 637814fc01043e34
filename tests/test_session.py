"""
Tests for the MCP stdio session (real child process via the fake tool server).
"""

import asyncio
import json
import sys

import pytest
from helpers import fake_server_descriptor
from mcp import types

from multi_llm_agent.errors import (
    MalformedResponse,
    ProcessExited,
    ProtocolTimeout,
    RemoteError,
    SessionCancelled,
    SpawnError,
)
from multi_llm_agent.mcp.server_config import ServerDescriptor
from multi_llm_agent.mcp.session import Session, SessionStatus, render_tool_content


@pytest.mark.asyncio
async def test_handshake_reaches_ready_and_fills_catalog():
    """ハンドシェイク後にReadyとなりツールカタログが取得できる"""
    async with Session(fake_server_descriptor()) as session:
        assert session.status is SessionStatus.READY
        assert session.is_ready
        assert "get_time" in session.catalog
        assert session.catalog["echo"].input_schema["required"] == ["text"]
        assert session.server_info.name == "fake-tool-server"
    assert session.status is SessionStatus.CLOSED


@pytest.mark.asyncio
async def test_handshake_records_server_metadata():
    """initializeの結果からサーバー情報・プロトコル・instructionsを記録する"""
    descriptor = fake_server_descriptor("guided", "--instructions", "Times are reported in UTC.")
    async with Session(descriptor) as session:
        assert session.protocol_version == types.LATEST_PROTOCOL_VERSION
        assert session.server_info.version == "1.0"
        assert session.capabilities.tools is not None
        assert session.instructions == "Times are reported in UTC."
        assert session.catalog["get_time"].description == "Return the current time"
        result = await session.call_tool("fail", {})
        assert result.is_error is True


@pytest.mark.asyncio
async def test_call_tool_returns_text_result():
    """ツール呼び出しの結果テキストが取得できる"""
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("get_time", {})
        assert result.text == "14:32"
        assert result.is_error is False

        echoed = await session.call_tool("echo", {"text": "こんにちは"})
        assert echoed.text == "こんにちは"
        assert session.pending_count == 0


@pytest.mark.asyncio
async def test_tool_level_error_is_a_result_not_an_exception():
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("fail", {})
        assert result.is_error is True
        assert result.text == "something went wrong"


@pytest.mark.asyncio
async def test_remote_error_carries_code():
    """JSON-RPCエラー応答はRemoteErrorとしてコード付きで送出される"""
    async with Session(fake_server_descriptor()) as session:
        with pytest.raises(RemoteError) as exc_info:
            await session.call_tool("boom", {})
        assert exc_info.value.code == -32000
        assert exc_info.value.remote_message == "boom"
        # Session stays usable after a remote error
        assert (await session.call_tool("get_time")).text == "14:32"


@pytest.mark.asyncio
async def test_invalid_result_shape_is_malformed_response():
    async with Session(fake_server_descriptor()) as session:
        with pytest.raises(MalformedResponse):
            await session.call_tool("garbage", {})
        assert session.pending_count == 0


@pytest.mark.asyncio
async def test_non_json_lines_are_dropped():
    """JSONでない行は破棄され、後続の正しい応答は受理される"""
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("noise", {})
        assert result.text == "after noise"


@pytest.mark.asyncio
async def test_duplicate_response_is_dropped():
    """同じidの重複応答は最初のものだけが採用される"""
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("dup", {})
        assert result.text == "first"
        follow_up = await session.call_tool("echo", {"text": "next"})
        assert follow_up.text == "next"
        assert session.pending_count == 0


@pytest.mark.asyncio
async def test_server_ping_is_answered():
    """サーバーからのpingリクエストに応答する"""
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("ping_client", {})
        assert result.text == "pong received"


@pytest.mark.asyncio
async def test_server_elicitation_is_accepted():
    """サーバーからのelicitation/createはacceptで応答する"""
    async with Session(fake_server_descriptor()) as session:
        result = await session.call_tool("elicit", {})
        assert json.loads(result.text) == {
            "action": "accept",
            "content": {"message": "Proceed with the deletion?"},
        }


@pytest.mark.asyncio
async def test_list_changed_notification_refreshes_catalog():
    async with Session(fake_server_descriptor()) as session:
        assert "extra" not in session.catalog
        await session.call_tool("add_tool", {})
        for _ in range(50):
            if "extra" in session.catalog:
                break
            await asyncio.sleep(0.05)
        assert "extra" in session.catalog


@pytest.mark.asyncio
async def test_pagination_is_followed():
    """ページングされたtools/listをすべて取得する"""
    async with Session(fake_server_descriptor("paged", "--page-size", "3")) as session:
        assert len(session.catalog) == 13
        assert {"get_time", "echo", "crash_once"} <= set(session.catalog)


@pytest.mark.asyncio
async def test_call_timeout_evicts_pending_request():
    """タイムアウトしたリクエストは保留テーブルから除去される"""
    async with Session(fake_server_descriptor()) as session:
        with pytest.raises(ProtocolTimeout):
            await session.call_tool("sleep", {"seconds": 2}, timeout=0.2)
        assert session.pending_count == 0


@pytest.mark.asyncio
async def test_call_timeout_defaults_to_descriptor_timeout():
    async with Session(fake_server_descriptor("slow", timeout=0.2)) as session:
        with pytest.raises(ProtocolTimeout) as exc_info:
            await session.call_tool("sleep", {"seconds": 2})
        assert exc_info.value.timeout == 0.2


@pytest.mark.asyncio
async def test_process_exit_fails_pending_call_and_marks_failed():
    """プロセス終了時に保留中の呼び出しはProcessExitedで失敗する"""
    session = Session(fake_server_descriptor())
    try:
        await session.handshake()
        with pytest.raises(ProcessExited):
            await session.call_tool("exit", {})
        assert session.status is SessionStatus.FAILED
        assert session.failure_reason == "process exited"
        assert not session.is_ready
        with pytest.raises(ProcessExited):
            await session.call_tool("get_time", {})
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_handshake_timeout_marks_failed():
    session = Session(fake_server_descriptor("hang", "--hang-initialize"), handshake_timeout=0.3)
    try:
        with pytest.raises(ProtocolTimeout):
            await session.handshake()
        assert session.status is SessionStatus.FAILED
        assert session.failure_reason == "timeout"
        # The hung child is stopped right away, not on the next attempt
        assert session._process.returncode is not None
        assert session._reader_task is None
        assert not session.is_ready
        with pytest.raises(ProcessExited):
            await session.call_tool("get_time", {})
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_exit_during_handshake_marks_failed():
    session = Session(fake_server_descriptor("dies", "--exit-on-initialize"))
    try:
        with pytest.raises(ProcessExited):
            await session.handshake()
        assert session.status is SessionStatus.FAILED
        assert session.failure_reason == "process exited"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_invalid_initialize_result_marks_failed():
    session = Session(fake_server_descriptor("bad", "--bad-initialize"))
    try:
        with pytest.raises(MalformedResponse):
            await session.handshake()
        assert session.failure_reason == "malformed response"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_spawn_error_for_missing_command():
    """存在しないコマンドはSpawnErrorとなる"""
    descriptor = ServerDescriptor(name="missing", command="/nonexistent/mcp-server-binary")
    session = Session(descriptor)
    with pytest.raises(SpawnError):
        await session.handshake()
    assert session.status is SessionStatus.FAILED
    assert session.failure_reason == "spawn"
    await session.close()


@pytest.mark.asyncio
async def test_close_cancels_pending_and_is_idempotent():
    """closeは保留中の要求をキャンセルし、複数回呼んでも安全"""
    session = Session(fake_server_descriptor())
    await session.handshake()
    pending = asyncio.create_task(session.call_tool("sleep", {"seconds": 5}, timeout=10))
    await asyncio.sleep(0.2)

    await session.close()
    with pytest.raises(SessionCancelled):
        await pending
    assert session.status is SessionStatus.CLOSED

    await session.close()
    assert session.status is SessionStatus.CLOSED
    with pytest.raises(SessionCancelled):
        await session.call_tool("get_time", {})


@pytest.mark.asyncio
async def test_env_and_workdir_are_passed_to_process(tmp_path):
    descriptor = ServerDescriptor(
        name="env",
        command=sys.executable,
        args=["-c", "import os; open('marker.txt', 'w').write(os.environ['FAKE_FLAG'])"],
        env={"FAKE_FLAG": "on"},
        workdir=str(tmp_path),
    )
    session = Session(descriptor)
    await session.start()
    try:
        assert await asyncio.wait_for(session._process.wait(), 10) == 0
    finally:
        await session.close()
    assert (tmp_path / "marker.txt").read_text() == "on"


def test_render_tool_content_variants():
    """各種コンテンツをテキストに変換する"""
    content = [
        {"type": "text", "text": "hello"},
        {"type": "image", "data": "AAAA", "mimeType": "image/png"},
        {"type": "resource", "resource": {"uri": "file:///a.txt", "text": "file body"}},
        {"type": "resource", "resource": {"uri": "file:///b.bin", "mimeType": "application/x"}},
    ]
    rendered = render_tool_content(content)
    assert "hello" in rendered
    assert "[Image: image/png]" in rendered
    assert "file body" in rendered
    assert "file:///b.bin" in rendered
    assert render_tool_content([]) == "(no text output)"
