import unittest

from sqlalchemy.exc import IntegrityError

from launcher.models import KILLED_EXIT_CODE, RunStatus, StreamType
from support import memory_store


class CommandStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = memory_store()

    def test_create_and_get_command(self):
        row = self.store.create_command("web", "npm run dev", "/tmp", {"PORT": "3000"})
        fetched = self.store.get_command(row.id)
        self.assertEqual(fetched.name, "web")
        self.assertEqual(fetched.command, "npm run dev")
        self.assertEqual(fetched.cwd, "/tmp")
        self.assertEqual(fetched.env, {"PORT": "3000"})
        self.assertIsNone(fetched.last_run_at)
        self.assertIsNone(fetched.last_exit_code)

    def test_partial_update_keeps_other_fields(self):
        row = self.store.create_command("web", "npm run dev", "", {"A": "1"})
        self.store.update_command(row.id, name="site")
        fetched = self.store.get_command(row.id)
        self.assertEqual(fetched.name, "site")
        self.assertEqual(fetched.command, "npm run dev")
        self.assertEqual(fetched.env, {"A": "1"})

        self.store.update_command(row.id, env={"B": "2"})
        self.assertEqual(self.store.get_command(row.id).env, {"B": "2"})

    def test_update_missing_command_returns_none(self):
        self.assertIsNone(self.store.update_command(999, name="x"))

    def test_delete_cascades_to_runs_chunks_and_memberships(self):
        cmd = self.store.create_command("a", "true")
        group = self.store.create_group("g")
        self.store.replace_group_commands(group.id, [cmd.id])
        run = self.store.create_run(cmd.id)
        self.store.append_log_chunk(run.id, StreamType.STDOUT, "hello")

        self.assertTrue(self.store.delete_command(cmd.id))

        self.assertIsNone(self.store.get_run(run.id))
        self.assertEqual(self.store.list_log_chunks(run.id), [])
        self.assertEqual(self.store.list_group_command_ids(group.id), [])
        self.assertFalse(self.store.delete_command(cmd.id))

    def test_chunk_for_deleted_run_is_rejected(self):
        cmd = self.store.create_command("a", "true")
        run = self.store.create_run(cmd.id)
        self.store.delete_command(cmd.id)
        with self.assertRaises(IntegrityError):
            self.store.append_log_chunk(run.id, StreamType.STDOUT, "late")
        with self.store.db.engine.connect() as conn:
            orphans = conn.exec_driver_sql("SELECT COUNT(*) FROM log_chunks").scalar()
        self.assertEqual(orphans, 0)

    def test_last_run_cache_uses_run_start_time(self):
        cmd = self.store.create_command("a", "true")
        run = self.store.create_run(cmd.id)
        self.store.finish_run(run.id, 0, RunStatus.SUCCESS)
        self.store.update_command_last_run(cmd.id, run.id, 0)
        fetched = self.store.get_command(cmd.id)
        self.assertEqual(fetched.last_exit_code, 0)
        self.assertEqual(fetched.last_run_at, self.store.get_run(run.id).started_at)


class RunStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = memory_store()
        self.cmd = self.store.create_command("a", "sleep 1")

    def test_new_run_is_running_without_pid(self):
        run = self.store.create_run(self.cmd.id)
        self.assertEqual(run.status, "running")
        self.assertIsNone(run.pid)
        self.assertEqual(self.store.running_run_id_for_command(self.cmd.id), run.id)

    def test_running_pid_only_for_running_runs(self):
        run = self.store.create_run(self.cmd.id)
        self.store.set_run_pid(run.id, 4321)
        self.assertEqual(self.store.running_pid_for_run(run.id), 4321)
        self.store.finish_run(run.id, 0, RunStatus.SUCCESS)
        self.assertIsNone(self.store.running_pid_for_run(run.id))
        self.assertIsNone(self.store.running_run_id_for_command(self.cmd.id))

    def test_finish_run_is_immutable_once_terminal(self):
        run = self.store.create_run(self.cmd.id)
        self.store.finish_run(run.id, 2, RunStatus.FAILED)
        again = self.store.finish_run(run.id, 0, RunStatus.SUCCESS)
        self.assertEqual(again.status, "failed")
        self.assertEqual(again.exit_code, 2)
        self.assertIsNotNone(again.finished_at)

    def test_mark_run_failed_sets_finish_time(self):
        run = self.store.create_run(self.cmd.id)
        self.store.mark_run_failed(run.id)
        fetched = self.store.get_run(run.id)
        self.assertEqual(fetched.status, "failed")
        self.assertIsNotNone(fetched.finished_at)
        self.assertIsNone(fetched.exit_code)


class GroupStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = memory_store()
        self.a = self.store.create_command("a", "true")
        self.b = self.store.create_command("b", "true")
        self.group = self.store.create_group("both")

    def test_replace_members_keeps_given_order(self):
        self.store.replace_group_commands(self.group.id, [self.b.id, self.a.id])
        self.assertEqual(self.store.list_group_command_ids(self.group.id), [self.b.id, self.a.id])
        self.store.replace_group_commands(self.group.id, [self.a.id])
        self.assertEqual(self.store.list_group_command_ids(self.group.id), [self.a.id])

    def test_command_can_belong_to_several_groups(self):
        other = self.store.create_group("other")
        self.store.replace_group_commands(self.group.id, [self.a.id])
        self.store.replace_group_commands(other.id, [self.a.id, self.b.id])
        self.assertEqual(self.store.list_group_command_ids(self.group.id), [self.a.id])
        self.assertEqual(self.store.list_group_command_ids(other.id), [self.a.id, self.b.id])

    def test_group_run_finishes_once(self):
        gr = self.store.create_group_run(self.group.id)
        self.assertEqual(self.store.running_group_run_id(self.group.id), gr.id)
        self.assertTrue(self.store.finish_group_run(gr.id, RunStatus.FAILED))
        self.assertFalse(self.store.finish_group_run(gr.id, RunStatus.SUCCESS))
        self.assertIs(self.store.group_run_status(gr.id), RunStatus.FAILED)
        self.assertIsNone(self.store.running_group_run_id(self.group.id))

    def test_mark_group_runs_killed_only_touches_running(self):
        gr = self.store.create_group_run(self.group.id)
        done = self.store.create_run(self.a.id, gr.id)
        live = self.store.create_run(self.b.id, gr.id)
        self.store.finish_run(done.id, 0, RunStatus.SUCCESS)

        self.assertEqual(self.store.count_running_runs(gr.id), 1)
        self.assertEqual(self.store.mark_group_runs_killed(gr.id), 1)

        self.assertEqual(self.store.get_run(done.id).status, "success")
        killed = self.store.get_run(live.id)
        self.assertEqual(killed.status, "killed")
        self.assertEqual(killed.exit_code, KILLED_EXIT_CODE)
        self.assertEqual(self.store.count_running_runs(gr.id), 0)

    def test_deleting_group_keeps_runs_but_detaches_them(self):
        gr = self.store.create_group_run(self.group.id)
        run = self.store.create_run(self.a.id, gr.id)
        self.assertTrue(self.store.delete_group(self.group.id))
        self.assertIsNone(self.store.get_group_run(gr.id))
        self.assertIsNone(self.store.get_run(run.id).group_run_id)


class LogChunkStoreTests(unittest.TestCase):
    def setUp(self):
        self.store = memory_store()
        cmd = self.store.create_command("a", "true")
        self.run_id = self.store.create_run(cmd.id).id
        self.other_run_id = self.store.create_run(cmd.id).id

    def test_chunks_come_back_in_insertion_order(self):
        self.store.append_log_chunk(self.run_id, StreamType.STDOUT, "one")
        self.store.append_log_chunk(self.run_id, StreamType.STDERR, "two")
        self.store.append_log_chunk(self.run_id, StreamType.STDOUT, "three")
        chunks = self.store.list_log_chunks(self.run_id)
        self.assertEqual([c.content for c in chunks], ["one", "two", "three"])
        self.assertEqual([c.stream_type for c in chunks], ["stdout", "stderr", "stdout"])

    def test_after_id_returns_only_newer_chunks(self):
        first = self.store.append_log_chunk(self.run_id, StreamType.STDOUT, "one")
        self.store.append_log_chunk(self.run_id, StreamType.STDOUT, "two")
        chunks = self.store.list_log_chunks(self.run_id, after_id=first)
        self.assertEqual([c.content for c in chunks], ["two"])

    def test_clear_for_one_run_or_all(self):
        self.store.append_log_chunk(self.run_id, StreamType.STDOUT, "one")
        self.store.append_log_chunk(self.other_run_id, StreamType.STDOUT, "two")
        self.assertEqual(self.store.clear_log_chunks(self.run_id), 1)
        self.assertEqual(len(self.store.list_log_chunks(self.other_run_id)), 1)
        self.assertEqual(self.store.clear_log_chunks(), 1)
        self.assertEqual(self.store.list_log_chunks(self.other_run_id), [])


if __name__ == "__main__":
    unittest.main()
