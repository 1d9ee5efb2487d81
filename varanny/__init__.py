"""
Varanny - remote launcher for VARA modem programs.

Varanny starts, stops and monitors VARA HF / VARA FM modem processes on behalf of
network clients. A client connects to the control port, asks for a modem by name and
the launcher runs it (with its CAT control helper and its own ini file) for as long
as the connection stays open. It can also stream the input level of the modem's
sound card and advertises every modem over DNS-SD so clients find it on their own.
"""

__version__ = "1.2.0"
