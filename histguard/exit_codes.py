"""
Standard exit codes for histguard commands.

0  success
1  refused: a policy precondition or conflict, nothing mutated
2  fatal: an operation failed and rollback was performed
3  partial divergence: remote state unknown, manual intervention required
"""
from typing import Optional

SUCCESS = 0              # Successful termination
REFUSED = 1              # Non-fatal policy violation (dirty state, non-fast-forward)
FATAL = 2                # Rollback performed, operation aborted
DIVERGENCE = 3           # Partial push divergence, manual intervention required
INTERRUPTED = 130        # Terminated by Ctrl+C (SIGINT) outside a push

# Exit code per error category (see histguard.exceptions)
CATEGORY_EXIT_CODES = {
    'policy': REFUSED,
    'conflict': REFUSED,
    'transient': FATAL,
    'fatal': FATAL,
    'divergence': DIVERGENCE,
    'warning': SUCCESS,
}

# Exit code mappings for builtin exceptions
EXCEPTION_EXIT_CODES = {
    'FileNotFoundError': FATAL,
    'PermissionError': FATAL,
    'TimeoutError': FATAL,
    'KeyboardInterrupt': INTERRUPTED,
}


def get_exit_code_for_exception(exc: BaseException) -> int:
    """
    Get the appropriate exit code for an exception.

    Args:
        exc: The exception that occurred

    Returns:
        Appropriate exit code
    """
    if isinstance(exc, CommandError):
        return exc.exit_code
    category = getattr(exc, 'category', None)
    if category in CATEGORY_EXIT_CODES:
        return CATEGORY_EXIT_CODES[category]
    exc_name = exc.__class__.__name__
    return EXCEPTION_EXIT_CODES.get(exc_name, FATAL)


def exit_with_code(code: int, message: Optional[str] = None):
    """
    Exit with a specific code and optional message.

    Args:
        code: Exit code
        message: Optional message to print to stderr
    """
    import sys
    if message:
        print(message, file=sys.stderr)
    sys.exit(code)


class CommandError(Exception):
    """
    Exception that commands can raise to indicate specific exit codes.
    """
    def __init__(self, message: str, exit_code: int = FATAL):
        super().__init__(message)
        self.exit_code = exit_code


class RefusedError(CommandError):
    """Raised when a command refuses to run."""
    def __init__(self, message: str):
        super().__init__(message, REFUSED)


class DivergenceExit(CommandError):
    """Raised when a check finds state that needs manual intervention."""
    def __init__(self, message: str):
        super().__init__(message, DIVERGENCE)
