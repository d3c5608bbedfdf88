# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# TERMINAL ATTACH
# -----------------------------------------------------------------------------
# Pumps the local terminal to and from an exec socket for interactive shells.
# With a TTY the local terminal goes into raw mode, so Ctrl-C travels to the
# remote pty as a byte and interrupts the remote process, not this one.
# -----------------------------------------------------------------------------

import os
import select
import shutil
import socket
import sys
from contextlib import contextmanager

try:
    import termios
    import tty
except ImportError:  # Windows
    termios = None
    tty = None

READ_SIZE = 4096


def terminal_size() -> tuple[int, int]:
    """Return (rows, columns) of the local terminal."""
    size = shutil.get_terminal_size()
    return size.lines, size.columns


def stdin_is_tty() -> bool:
    return sys.stdin.isatty() and termios is not None


@contextmanager
def raw_mode(fd: int):
    """Put a TTY into raw mode for the duration of the block."""
    if termios is None or not os.isatty(fd):
        yield
        return
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def _raw_socket(sock) -> socket.socket:
    # docker-py hands back a SocketIO wrapper on unix sockets
    return getattr(sock, "_sock", sock)


def pump(sock, stdin_fd: int | None = None, stdout_fd: int | None = None) -> None:
    """
    Copy stdin to the socket and the socket to stdout until the remote side closes.

    Blocking; run it in a worker thread.
    """
    raw = _raw_socket(sock)
    stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
    stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
    watched = [raw, stdin_fd]

    with raw_mode(stdin_fd):
        while True:
            readable, _, _ = select.select(watched, [], [])
            if raw in readable:
                data = raw.recv(READ_SIZE)
                if not data:
                    break
                os.write(stdout_fd, data)
            if stdin_fd in readable:
                data = os.read(stdin_fd, READ_SIZE)
                if not data:
                    # local EOF: stop sending but keep reading remote output
                    watched.remove(stdin_fd)
                    try:
                        raw.shutdown(socket.SHUT_WR)
                    except OSError:
                        break
                    continue
                raw.sendall(data)
