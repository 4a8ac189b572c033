"""MCP Server exposing the launcher's commands, groups and runs as tools."""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from launcher.actions import Launcher
from launcher.config import DEFAULT_PORT


def create_server(
    launcher: Launcher,
    host: str = "127.0.0.1",
    port: int = DEFAULT_PORT,
) -> FastMCP:
    """Create and configure the MCP launcher server."""

    lc = launcher

    mcp = FastMCP(
        name="launcher",
        instructions=(
            "Defines named shell commands and groups of commands, and runs, "
            "stops and restarts them. Use list_commands for status, "
            "start_command / stop_command / restart_command to control a "
            "command, run_group to launch a group all-or-nothing, and "
            "get_logs to read a run's output."
        ),
        host=host,
        port=port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_commands() -> dict:
        """List saved commands with their live status and last result."""
        return lc.list_commands().to_dict()

    @mcp.tool()
    async def create_command(
        name: str,
        command: str,
        cwd: str = "",
        env: dict[str, str] | None = None,
    ) -> dict:
        """Save a new named shell command.

        Args:
            name: Display name (e.g. "dev-server").
            command: Shell command line (e.g. "npm run dev").
            cwd: Working directory. Empty or missing falls back to the
                 launcher's own directory.
            env: Extra environment variables (override inherited ones).
        """
        return lc.create_command(name, command, cwd, env).to_dict()

    @mcp.tool()
    async def update_command(
        command_id: int,
        name: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> dict:
        """Change any of a command's fields. Omitted fields are left as-is."""
        return lc.update_command(
            command_id, name=name, command=command, cwd=cwd, env=env,
        ).to_dict()

    @mcp.tool()
    async def delete_command(command_id: int) -> dict:
        """Delete a command with all its runs and logs (stops it if live)."""
        return lc.delete_command(command_id).to_dict()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_command(command_id: int) -> dict:
        """Start a command. Fails with already_running if it is live."""
        return (await lc.start_run(command_id)).to_dict()

    @mcp.tool()
    async def stop_command(command_id: int, run_id: int | None = None) -> dict:
        """Send SIGTERM to the command's process group.

        Args:
            command_id: Command to stop.
            run_id: Optional specific run; must belong to the command.
        """
        return lc.stop_run(command_id, run_id).to_dict()

    @mcp.tool()
    async def restart_command(command_id: int) -> dict:
        """Stop the command, wait for it to exit (escalating to SIGKILL
        after the configured timeout), then start it again."""
        return (await lc.restart_run(command_id)).to_dict()

    @mcp.tool()
    async def get_run(run_id: int) -> dict:
        """Status, pid, exit code and timestamps of a run."""
        return lc.get_run(run_id).to_dict()

    @mcp.tool()
    async def list_runs(command_id: int, limit: int = 20) -> dict:
        """Most recent runs of a command, newest first."""
        return lc.list_runs(command_id, limit).to_dict()

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_groups() -> dict:
        """List groups with members, last group run and running state."""
        return lc.list_groups().to_dict()

    @mcp.tool()
    async def create_group(name: str) -> dict:
        """Create an empty group."""
        return lc.create_group(name).to_dict()

    @mcp.tool()
    async def update_group(group_id: int, name: str) -> dict:
        """Rename a group."""
        return lc.update_group(group_id, name).to_dict()

    @mcp.tool()
    async def delete_group(group_id: int) -> dict:
        """Delete a group and its group-run history."""
        return lc.delete_group(group_id).to_dict()

    @mcp.tool()
    async def set_group_commands(group_id: int, command_ids: list[int]) -> dict:
        """Replace a group's members. List order is launch order."""
        return lc.set_group_commands(group_id, command_ids).to_dict()

    @mcp.tool()
    async def run_group(group_id: int) -> dict:
        """Launch every member of a group.

        If any member fails or is killed, the remaining members are killed
        and the group run ends failed.
        """
        return (await lc.launch_group(group_id)).to_dict()

    @mcp.tool()
    async def get_group_run(group_run_id: int) -> dict:
        """Status of a group run and each of its member runs."""
        return lc.get_group_run(group_run_id).to_dict()

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_logs(run_id: int, after_id: int = 0) -> dict:
        """Get a run's recorded output chunks in order.

        Args:
            run_id: Run to read.
            after_id: Only chunks with a larger id; pass the last id seen
                      to poll a live run for new output.
        """
        return lc.get_logs(run_id, after_id).to_dict()

    @mcp.tool()
    async def clear_logs(run_id: int | None = None) -> dict:
        """Delete recorded output for one run, or for every run."""
        return lc.clear_logs(run_id).to_dict()

    return mcp
