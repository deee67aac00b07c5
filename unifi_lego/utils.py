"""
Error reporting shared by the unifi-lego commands.
"""

import subprocess
import sys
from typing import NoReturn

from .console import console_manager
from .types import AcmeClientError, DeploymentError


def handle_exception(e: Exception, exit_on_error: bool = True) -> NoReturn | None:
    """Report ``e`` on the error console, then exit 1 unless told otherwise.

    External command failures show the command's own stderr when there is
    any. Failures before or during deployment add a note saying what was
    left on disk.
    """
    if isinstance(e, subprocess.CalledProcessError):
        if e.stderr:
            stderr = e.stderr if isinstance(e.stderr, str) else e.stderr.decode()
            console_manager.error_console.print(stderr, end="", markup=False)
        else:
            console_manager.print_error(
                f"Command failed with exit code {getattr(e, 'returncode', 'unknown')}"
            )
    # lego, keytool, systemctl or java missing from PATH
    elif isinstance(e, FileNotFoundError):
        console_manager.print_error(f"File not found: {getattr(e, 'filename', None)}")
    else:
        console_manager.print_error(str(e))
        if isinstance(e, AcmeClientError):
            console_manager.print_note("No certificate was deployed during this run")
        elif isinstance(e, DeploymentError):
            console_manager.print_note(
                f"Deployment stopped at target '{e.target}'; "
                "targets deployed before it were left in place"
            )

    if exit_on_error:
        sys.exit(1)
    return None
