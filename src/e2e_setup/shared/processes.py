"""Child process cleanup for cancelled setup work."""

import asyncio
import os
import signal


async def reap(process: asyncio.subprocess.Process, group: bool = False) -> None:
    """Kill a child that is still running and wait for it to exit.

    Args:
        process: Child started with asyncio.create_subprocess_exec.
        group: Kill the whole process group. The child must have been
            started with start_new_session=True.
    """
    if process.returncode is not None:
        return
    try:
        if group:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
