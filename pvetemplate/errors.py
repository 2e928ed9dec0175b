from __future__ import annotations

import subprocess
import sys
from typing import Callable

from pvetemplate.pve import ExternalCommandFailed, PveClient


class UserFacingError(RuntimeError):
    """Error with user-facing text; caller should print and return non-zero."""

    stage: str | None = None


class ValidationError(UserFacingError):
    """A precondition was not met. Nothing was created."""


class DownloadExhausted(UserFacingError):
    """The image download retry budget was spent. Nothing was created."""


class VolumeTimeout(UserFacingError):
    """An imported or resized volume never became visible."""


class AlreadyRunning(UserFacingError):
    """Another provisioning run holds the host lock."""


class ProvisioningInterrupted(UserFacingError):
    """The run received SIGINT or SIGTERM."""


def describe_failure(exc: BaseException) -> str:
    stage = getattr(exc, "stage", None)
    if stage:
        return f"Provisioning failed during stage '{stage}'.\n{exc}"
    return str(exc)


def main_guard(fn: Callable[[PveClient], None]) -> None:
    """Run fn and convert known errors to CLI output/exit code."""
    client = PveClient()
    try:
        fn(client)
    except (UserFacingError, ExternalCommandFailed) as exc:
        print(describe_failure(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except KeyboardInterrupt as exc:
        print("Error: Interrupted.", file=sys.stderr)
        raise SystemExit(1) from exc
    except FileNotFoundError as exc:
        print(f"Error: Command not found: {exc.filename or 'unknown'}", file=sys.stderr)
        raise SystemExit(1) from exc
    except subprocess.SubprocessError as exc:
        print(f"Error: Command execution failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except OSError as exc:
        print(f"Error: OS command failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
