"""
Control Protocol Parser.

This module parses the newline-terminated text commands that clients send to the
launcher's control port into Command objects.
"""

import re
from dataclasses import dataclass

from .errors import ProtocolError


@dataclass(frozen=True)
class Command:
    verb: str
    argument: str = ""


class CommandParser:
    """Parses one line of the control protocol.

    Commands are case-sensitive. ``start`` and ``monitor`` take the rest of the line
    as the modem name, since modem names may contain spaces. The other commands take
    no argument.
    """

    PATTERNS = [
        (r"^start (.+)$", "start"),
        (r"^monitor (.+)$", "monitor"),
        (r"^stop$", "stop"),
        (r"^version$", "version"),
        (r"^list$", "list"),
        (r"^config$", "config"),
    ]

    @classmethod
    def parse(cls, line: str) -> Command:
        """Parses a trimmed line into a Command.

        Args:
            line: One line received from the client, surrounding whitespace removed.

        Returns:
            The parsed command, e.g. ``Command("start", "VARA HF")``.

        Raises:
            ProtocolError: the line is not a known command.
        """
        for pattern, verb in cls.PATTERNS:
            match = re.match(pattern, line)
            if match:
                argument = match.group(1).strip() if match.groups() else ""
                if match.groups() and not argument:
                    break
                return Command(verb, argument)
        raise ProtocolError(f"Invalid command: {line!r}")
