import asyncio
import os
import tempfile
import unittest
from unittest import mock

from launcher.errors import AlreadyRunning, SpawnFailed
from launcher.models import KILLED_EXIT_CODE, LogEventType, RunStatus
from launcher.process_manager.supervisor import resolve_cwd
from support import LauncherTestCase, posix_only


class ResolveCwdTests(unittest.TestCase):
    def test_empty_falls_back_to_own_cwd(self):
        self.assertEqual(resolve_cwd(""), os.getcwd())
        self.assertEqual(resolve_cwd("   "), os.getcwd())
        self.assertEqual(resolve_cwd(None), os.getcwd())

    def test_missing_directory_falls_back_to_own_cwd(self):
        self.assertEqual(resolve_cwd("/definitely/not/a/real/dir"), os.getcwd())

    def test_existing_directory_is_used(self):
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(resolve_cwd(td), os.path.abspath(td))


@posix_only
class SupervisorLifecycleTests(LauncherTestCase):
    async def test_echo_succeeds_with_one_stdout_chunk(self):
        cmd_id = self.make_command("echo hi", name="echo-test")
        run_id = await self.start(cmd_id)
        self.assertTrue(self.launcher.registry.is_run_live(run_id))
        self.assertEqual(self.store.get_run(run_id).status, "running")

        status = await self.wait_run(run_id)

        self.assertIs(status, RunStatus.SUCCESS)
        run = self.store.get_run(run_id)
        self.assertEqual(run.exit_code, 0)
        self.assertIsNotNone(run.finished_at)
        self.assertIsNotNone(run.pid)
        chunks = self.store.list_log_chunks(run_id)
        self.assertEqual([(c.stream_type, c.content) for c in chunks], [("stdout", "hi\n")])
        self.assertFalse(self.launcher.registry.is_run_live(run_id))

        command = self.store.get_command(cmd_id)
        self.assertEqual(command.last_exit_code, 0)
        self.assertEqual(command.last_run_at, run.started_at)

    async def test_nonzero_exit_is_failed(self):
        cmd_id = self.make_command("exit 3")
        run_id = await self.start(cmd_id)
        self.assertIs(await self.wait_run(run_id), RunStatus.FAILED)
        self.assertEqual(self.store.get_run(run_id).exit_code, 3)
        self.assertEqual(self.store.get_command(cmd_id).last_exit_code, 3)

    async def test_unknown_executable_is_a_failed_run_not_an_error(self):
        cmd_id = self.make_command("definitely-not-a-real-binary-xyz")
        run_id = await self.start(cmd_id)
        self.assertIs(await self.wait_run(run_id), RunStatus.FAILED)
        self.assertEqual(self.store.get_run(run_id).exit_code, 127)
        streams = {c.stream_type for c in self.store.list_log_chunks(run_id)}
        self.assertEqual(streams, {"stderr"})

    async def test_stop_before_exit_is_killed(self):
        cmd_id = self.make_command("sleep 30")
        run_id = await self.start(cmd_id)
        self.assertTrue(self.launcher.stop_run(cmd_id).success)

        self.assertIs(await self.wait_run(run_id), RunStatus.KILLED)
        self.assertEqual(self.store.get_run(run_id).exit_code, KILLED_EXIT_CODE)

    async def test_second_start_while_live_is_rejected(self):
        cmd_id = self.make_command("sleep 30")
        run_id = await self.start(cmd_id)
        command = self.store.get_command(cmd_id)

        with self.assertRaises(AlreadyRunning):
            await self.launcher.supervisor.start(cmd_id, command.command)

        result = await self.launcher.start_run(cmd_id)
        self.assertFalse(result.success)
        self.assertEqual(result.code.value, "already_running")
        self.assertEqual(len(self.store.list_runs_for_command(cmd_id)), 1)
        self.assertEqual(self.launcher.registry.live_run_id_for_command(cmd_id), run_id)

    async def test_concurrent_starts_produce_one_live_run(self):
        cmd_id = self.make_command("sleep 30")
        results = await asyncio.gather(*(self.launcher.start_run(cmd_id) for _ in range(5)))
        self.assertEqual(sum(r.success for r in results), 1)
        self.assertEqual(len(self.launcher.registry), 1)
        self.assertEqual(len(self.store.list_runs_for_command(cmd_id)), 1)

    async def test_start_again_after_exit(self):
        cmd_id = self.make_command("true")
        first = await self.start(cmd_id)
        await self.wait_run(first)
        second = await self.start(cmd_id)
        await self.wait_run(second)
        self.assertNotEqual(first, second)


@posix_only
class SupervisorEnvironmentTests(LauncherTestCase):
    async def output_of(self, cmd_id):
        run_id = await self.start(cmd_id)
        await self.wait_run(run_id)
        return "".join(c.content for c in self.store.list_log_chunks(run_id))

    async def test_env_overlay_wins_over_inherited(self):
        with mock.patch.dict(os.environ, {"LAUNCHER_TEST_VAR": "inherited", "LAUNCHER_KEEP": "kept"}):
            cmd_id = self.make_command(
                'printf "%s %s" "$LAUNCHER_TEST_VAR" "$LAUNCHER_KEEP"',
                env={"LAUNCHER_TEST_VAR": "overlay"},
            )
            self.assertEqual(await self.output_of(cmd_id), "overlay kept")

    async def test_runs_in_configured_directory(self):
        with tempfile.TemporaryDirectory() as td:
            cmd_id = self.make_command("pwd", cwd=td)
            out = await self.output_of(cmd_id)
            self.assertEqual(os.path.realpath(out.strip()), os.path.realpath(td))

    async def test_missing_directory_does_not_fail_launch(self):
        cmd_id = self.make_command("pwd", cwd="/definitely/not/a/real/dir")
        out = await self.output_of(cmd_id)
        self.assertEqual(os.path.realpath(out.strip()), os.path.realpath(os.getcwd()))

    async def test_stderr_is_recorded_as_stderr(self):
        cmd_id = self.make_command("echo err 1>&2")
        run_id = await self.start(cmd_id)
        await self.wait_run(run_id)
        chunks = self.store.list_log_chunks(run_id)
        self.assertEqual([(c.stream_type, c.content) for c in chunks], [("stderr", "err\n")])


@posix_only
class SupervisorNotificationTests(LauncherTestCase):
    async def test_notifies_at_start_and_at_exit(self):
        cmd_id = self.make_command("true")
        seen = []
        self.launcher.subscribe_state_change(
            lambda: seen.append(self.launcher.registry.running_run_ids())
        )

        run_id = await self.start(cmd_id)
        # The notification fires after the registry mutation.
        self.assertEqual(seen, [[run_id]])

        await self.wait_run(run_id)
        self.assertEqual(seen, [[run_id], []])

    async def test_live_subscriber_sees_persisted_sequence(self):
        cmd_id = self.make_command(
            "printf 'a\\n'; sleep 0.1; printf 'e\\n' 1>&2; sleep 0.1; printf 'b\\n'"
        )
        run_id = await self.start(cmd_id)
        events = []
        self.launcher.subscribe_logs(run_id, events.append)

        await self.wait_run(run_id)

        finished = [e for e in events if e.type is LogEventType.FINISHED]
        self.assertEqual(len(finished), 1)
        self.assertIs(events[-1].type, LogEventType.FINISHED)
        chunks = self.store.list_log_chunks(run_id)
        for stream in ("stdout", "stderr"):
            live = [e.content for e in events if e.stream is not None and e.stream.value == stream]
            persisted = [c.content for c in chunks if c.stream_type == stream]
            self.assertEqual(live, persisted)
        self.assertEqual("".join(c.content for c in chunks if c.stream_type == "stdout"), "a\nb\n")

    async def test_spawn_failure_marks_run_failed(self):
        cmd_id = self.make_command("echo never")
        seen = []
        self.launcher.subscribe_state_change(lambda: seen.append(True))
        with mock.patch("asyncio.create_subprocess_shell", side_effect=OSError("fork failed")):
            with self.assertRaises(SpawnFailed):
                await self.launcher.supervisor.start(cmd_id, "echo never")

        runs = self.store.list_runs_for_command(cmd_id)
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0].status, "failed")
        self.assertIsNone(runs[0].pid)
        self.assertEqual(len(self.launcher.registry), 0)
        self.assertEqual(seen, [True])

    async def test_spawn_failure_surfaces_as_result(self):
        cmd_id = self.make_command("echo never")
        with mock.patch("asyncio.create_subprocess_shell", side_effect=OSError("fork failed")):
            result = await self.launcher.start_run(cmd_id)
        self.assertFalse(result.success)
        self.assertEqual(result.code.value, "spawn_failed")
        self.assertEqual(result.status, 500)
        self.assertIn("fork failed", result.error)


if __name__ == "__main__":
    unittest.main()
