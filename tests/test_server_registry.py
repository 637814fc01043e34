"""
Tests for the MCP server registry.
"""

import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from helpers import fake_server_descriptor

from multi_llm_agent.errors import (
    ProcessExited,
    ProtocolTimeout,
    ServerNotReadyError,
    UnknownServerError,
)
from multi_llm_agent.mcp.registry import ServerRegistry
from multi_llm_agent.mcp.server_config import ServerDescriptor
from multi_llm_agent.mcp.session import SessionStatus


class TestServerRegistryRegistration(unittest.TestCase):
    def test_register_creates_uninitialized_session(self):
        """登録直後のセッションは未初期化状態"""
        registry = ServerRegistry()
        registry.register(ServerDescriptor(name="time", command="uvx", args=["mcp-server-time"]))

        self.assertIn("time", registry)
        self.assertEqual(registry.names(), ["time"])
        self.assertIs(registry.lookup("time").status, SessionStatus.UNINITIALIZED)
        self.assertEqual(registry.catalog("time"), {})
        self.assertEqual(registry.ready_sessions(), [])

    def test_register_duplicate_name_raises_error(self):
        """重複するサーバー名でエラーが発生する"""
        registry = ServerRegistry()
        registry.register(ServerDescriptor(name="time", command="uvx"))
        with self.assertRaises(ValueError) as cm:
            registry.register(ServerDescriptor(name="time", command="npx"))
        self.assertIn("already registered", str(cm.exception))

    def test_register_invalid_descriptor_raises_error(self):
        registry = ServerRegistry()
        with self.assertRaises(ValueError):
            registry.register(ServerDescriptor(name="", command="uvx"))
        with self.assertRaises(ValueError):
            registry.register(ServerDescriptor(name="x", command="uvx", timeout=0))

    def test_lookup_unknown_returns_none(self):
        registry = ServerRegistry()
        self.assertIsNone(registry.lookup("nope"))
        self.assertIsNone(registry.descriptor("nope"))


class TestServerRegistryLifecycle(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.registry = ServerRegistry(handshake_timeout=5)

    async def asyncTearDown(self):
        await self.registry.aclose()

    async def test_ensure_ready_unknown_server(self):
        with self.assertRaises(UnknownServerError):
            await self.registry.ensure_ready("missing")

    async def test_ensure_ready_brings_server_up(self):
        """ensure_readyでサーバーが起動しカタログが登録される"""
        self.registry.register(fake_server_descriptor("fake"))
        session = await self.registry.ensure_ready("fake")

        self.assertTrue(session.is_ready)
        self.assertIn("get_time", self.registry.catalog("fake"))
        self.assertEqual([name for name, _ in self.registry.ready_sessions()], ["fake"])
        # Second call returns the same Ready session
        self.assertIs(await self.registry.ensure_ready("fake"), session)

    async def test_concurrent_ensure_ready_shares_one_handshake(self):
        """同じサーバーへの同時ensure_readyはハンドシェイクを1回だけ行う"""
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as tmp:
            count_file = Path(tmp) / "count.txt"
            self.registry.register(
                fake_server_descriptor("fake", "--count-file", str(count_file))
            )

            first, second = await asyncio.gather(
                self.registry.ensure_ready("fake"), self.registry.ensure_ready("fake")
            )

            self.assertIs(first, second)
            self.assertEqual(count_file.read_text().count("init"), 1)
            await self.registry.aclose()

    async def test_different_servers_come_up_independently(self):
        self.registry.register(fake_server_descriptor("a"))
        self.registry.register(fake_server_descriptor("b"))
        a, b = await asyncio.gather(
            self.registry.ensure_ready("a"), self.registry.ensure_ready("b")
        )
        self.assertIsNot(a, b)
        self.assertEqual(sorted(n for n, _ in self.registry.ready_sessions()), ["a", "b"])

    async def test_failed_handshake_stops_process_and_keeps_reason(self):
        """ハンドシェイク失敗時はプロセスを停止し、Failed状態と理由を残す"""
        registry = ServerRegistry(handshake_timeout=0.3)
        registry.register(fake_server_descriptor("hang", "--hang-initialize"))
        try:
            with self.assertRaises(ProtocolTimeout):
                await registry.ensure_ready("hang")
            session = registry.lookup("hang")
            self.assertIs(session.status, SessionStatus.FAILED)
            self.assertEqual(session.failure_reason, "timeout")
            self.assertEqual(registry.ready_sessions(), [])
            self.assertIsNotNone(session._process.returncode)
            self.assertIsNone(session._reader_task)
        finally:
            await registry.aclose()

    async def test_exited_server_is_relaunched_on_next_ensure_ready(self):
        """終了したサーバーは次のensure_readyで再起動される"""
        self.registry.register(fake_server_descriptor("fake"))
        session = await self.registry.ensure_ready("fake")
        with self.assertRaises(ProcessExited):
            await session.call_tool("exit", {})

        relaunched = await self.registry.ensure_ready("fake")
        self.assertIsNot(relaunched, session)
        self.assertTrue(relaunched.is_ready)
        self.assertIs(session.status, SessionStatus.CLOSED)
        result = await relaunched.call_tool("get_time", {})
        self.assertEqual(result.text, "14:32")

    async def test_reinitialize_replaces_ready_session(self):
        self.registry.register(fake_server_descriptor("fake"))
        session = await self.registry.ensure_ready("fake")
        fresh = await self.registry.reinitialize("fake")
        self.assertIsNot(fresh, session)
        self.assertTrue(fresh.is_ready)
        self.assertIs(session.status, SessionStatus.CLOSED)

    async def test_reinitialize_with_stale_session_keeps_newer_ready_one(self):
        """別の呼び出し元が既に再初期化済みなら、新しいセッションをそのまま返す"""
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as tmp:
            count_file = Path(tmp) / "count.txt"
            self.registry.register(
                fake_server_descriptor("fake", "--count-file", str(count_file))
            )
            stale = await self.registry.ensure_ready("fake")
            fresh = await self.registry.reinitialize("fake", stale=stale)

            again = await self.registry.reinitialize("fake", stale=stale)

            self.assertIs(again, fresh)
            self.assertTrue(fresh.is_ready)
            self.assertEqual(count_file.read_text().count("init"), 2)
            await self.registry.aclose()

    async def test_resync_requires_ready_session(self):
        self.registry.register(fake_server_descriptor("fake"))
        with self.assertRaises(ServerNotReadyError):
            await self.registry.resync("fake")
        with self.assertRaises(UnknownServerError):
            await self.registry.resync("other")

        await self.registry.ensure_ready("fake")
        catalog = await self.registry.resync("fake")
        self.assertIn("echo", catalog)

    async def test_aclose_closes_all_sessions(self):
        self.registry.register(fake_server_descriptor("fake"))
        session = await self.registry.ensure_ready("fake")
        await self.registry.aclose()
        self.assertIs(session.status, SessionStatus.CLOSED)


class TestServerRegistryReload(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.registry = ServerRegistry(handshake_timeout=5)

    async def asyncTearDown(self):
        await self.registry.aclose()

    async def test_unchanged_ready_session_survives_reload(self):
        """設定が変わらないReadyセッションはリロード後もそのまま残る"""
        keep = fake_server_descriptor("keep")
        self.registry.register(keep)
        session = await self.registry.ensure_ready("keep")

        report = await self.registry.apply_descriptors([fake_server_descriptor("keep")])

        self.assertEqual(report.unchanged, ["keep"])
        self.assertEqual(report.added + report.changed + report.removed, [])
        self.assertIs(self.registry.lookup("keep"), session)
        self.assertTrue(session.is_ready)

    async def test_reload_adds_changes_and_removes(self):
        self.registry.register(fake_server_descriptor("changed"))
        self.registry.register(fake_server_descriptor("removed"))
        old_changed = await self.registry.ensure_ready("changed")
        old_removed = await self.registry.ensure_ready("removed")

        report = await self.registry.apply_descriptors(
            [
                fake_server_descriptor("changed", timeout=30),
                fake_server_descriptor("added"),
            ]
        )

        self.assertEqual(report.added, ["added"])
        self.assertEqual(report.changed, ["changed"])
        self.assertEqual(report.removed, ["removed"])
        self.assertNotIn("removed", self.registry)
        self.assertIs(old_removed.status, SessionStatus.CLOSED)
        self.assertIs(old_changed.status, SessionStatus.CLOSED)
        # Changed server that was Ready is re-initialized right away
        new_changed = self.registry.lookup("changed")
        self.assertIsNot(new_changed, old_changed)
        self.assertTrue(new_changed.is_ready)
        self.assertEqual(self.registry.descriptor("changed").timeout, 30)
        # Added server stays Uninitialized until first use
        self.assertIs(self.registry.lookup("added").status, SessionStatus.UNINITIALIZED)

    async def test_reload_rejects_duplicate_names(self):
        with self.assertRaises(ValueError):
            await self.registry.apply_descriptors(
                [fake_server_descriptor("x"), fake_server_descriptor("x")]
            )

    async def test_reload_logs_failed_reinitialize(self):
        self.registry.register(fake_server_descriptor("fake"))
        await self.registry.ensure_ready("fake")

        with patch.object(
            ServerRegistry, "ensure_ready", AsyncMock(side_effect=ProcessExited("fake"))
        ):
            with self.assertLogs("multi_llm_agent.mcp.registry", level="WARNING") as logs:
                report = await self.registry.apply_descriptors(
                    [fake_server_descriptor("fake", timeout=30)]
                )
        self.assertEqual(report.changed, ["fake"])
        self.assertTrue(any("Failed to re-initialize" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
