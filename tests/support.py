"""Shared fixtures for launcher tests."""

import asyncio
import os
import unittest

from launcher.actions import Launcher
from launcher.db import Database, Store

posix_only = unittest.skipUnless(os.name == "posix", "needs /bin/sh and process groups")


def memory_store() -> Store:
    db = Database("sqlite://")
    db.create_all()
    return Store(db)


class LauncherTestCase(unittest.IsolatedAsyncioTestCase):
    """A Launcher on an in-memory database; live runs are stopped on teardown."""

    stop_timeout = 2.0

    async def asyncSetUp(self):
        db = Database("sqlite://")
        db.create_all()
        self.launcher = Launcher(db, stop_timeout=self.stop_timeout)
        self.store = self.launcher.store

    async def asyncTearDown(self):
        await self.launcher.shutdown()

    def make_command(self, command, name=None, **kwargs):
        result = self.launcher.create_command(name or command, command, **kwargs)
        self.assertTrue(result.success, result)
        return result.data["id"]

    async def start(self, command_id):
        result = await self.launcher.start_run(command_id)
        self.assertTrue(result.success, result)
        return result.data["run_id"]

    async def wait_run(self, run_id, timeout=10.0):
        return await asyncio.wait_for(self.launcher.supervisor.wait(run_id), timeout)

    async def wait_until(self, predicate, timeout=10.0, interval=0.02):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() >= deadline:
                self.fail("condition not met in time")
            await asyncio.sleep(interval)
