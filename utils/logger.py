import logging
import threading
from typing import Optional, Set

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s"

custom_theme = Theme({
    "success": "bold green",
    "error": "bold red",
    "skip": "bold cyan",
    "warning": "bold yellow",
    "changed": "bold yellow",
    "info": "dim white"
})

console = Console(theme=custom_theme)

# File log (always on once configured). Console output goes through `console`.
sys_logger = logging.getLogger("hakube")
sys_logger.addHandler(logging.NullHandler())

_secrets: Set[str] = set()
_secrets_lock = threading.Lock()


def register_secret(value: str) -> None:
    """Marks a value that must never reach a log sink in clear text."""
    if value and len(value) >= 4:
        with _secrets_lock:
            _secrets.add(value)


def redact(text: str) -> str:
    with _secrets_lock:
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, "********")
    return text


class RedactingFilter(logging.Filter):
    """Masks registered secrets in every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class StepLogger:
    """Indented operator output: phases at top level, node lines nested."""

    icons = {
        "success": "✅",
        "changed": "✨",
        "error": "❌",
        "skip": "🔵",
        "warning": "🔶",
        "info": "ℹ️"
    }

    def __init__(self, out: Console = console):
        self.console = out
        self.indent_level = 0

    def log_step(self, status: str, msg: str):
        icon = self.icons.get(status, "•")
        indent = "   " * self.indent_level
        self.console.print(f"{indent}{icon} [{status}]{msg}[/{status}]")

    def phase(self, name: str, detail: str = ""):
        return self._Context(self, name, detail)

    class _Context:
        def __init__(self, logger, name, detail):
            self.logger = logger
            self.name = name
            self.detail = detail

        def __enter__(self):
            indent = "   " * self.logger.indent_level
            suffix = f" [dim]{self.detail}[/dim]" if self.detail else ""
            self.logger.console.print(f"\n{indent}🚀 [bold blue]Phase: {self.name}[/bold blue]{suffix}")
            self.logger.indent_level += 1
            return self

        def __exit__(self, exc_type, exc_value, traceback):
            self.logger.indent_level -= 1
            if exc_type:
                self.logger.log_step("error", f"Interrupted: {exc_value}")
                return False


logger = StepLogger()


def setup_logging(verbosity: int = 0, log_file: Optional[str] = "hakube.log") -> logging.Logger:
    """
    Configures the 'hakube' logger.

    Args:
        verbosity: 0-3. At 3 the DEBUG stream is mirrored on the console.
        log_file: Path of the persistent log, None to disable it.
    """
    sys_logger.setLevel(logging.DEBUG)

    # Idempotent: drop handlers installed by a previous call
    for handler in list(sys_logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            sys_logger.removeHandler(handler)
            handler.close()

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(RedactingFilter())
        sys_logger.addHandler(file_handler)

    if verbosity >= 3:
        rich_handler = RichHandler(console=console, show_path=False, markup=False)
        rich_handler.setLevel(logging.DEBUG)
        rich_handler.addFilter(RedactingFilter())
        sys_logger.addHandler(rich_handler)

    # Noisy transport libraries
    for noisy in ("scrapli", "paramiko", "asyncssh", "nornir"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbosity >= 3 else logging.WARNING)

    return sys_logger
