"""
Tests for the connection multiplexer and daemon bootstrap helpers.

A real RongServer runs in a background thread on a Unix socket inside a
temporary directory; tests talk to it with plain sockets and check the
bytes that come back.
"""

import os
import shutil
import signal
import socket
import stat
import subprocess
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from rong import __version__
from rong.core.configs import get_daemon_config
from rong.daemon.client import GREETING_RE, DaemonClient, is_daemon_running
from rong.daemon.protocol import ResponseDecoder
from rong.daemon.server import (
    GREETING,
    DaemonAlreadyRunning,
    RongServer,
    ServerExit,
    acquire_lock,
    bind_listener,
    main,
    run_daemon,
    secure_runtime_dir,
)
from rong.daemon.state import DaemonState

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class RawConnection:
    """Client socket that returns each response frame as its wire text."""

    def __init__(self, socket_path: Path):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(5)
        self.sock.connect(str(socket_path))
        self.decoder = ResponseDecoder(raw=True)
        self.greeting = self.read()

    def send(self, data: bytes) -> None:
        self.sock.sendall(data)

    def request(self, line: str) -> str:
        self.send(line.encode("utf-8") + b"\n")
        return self.read()

    def read(self) -> str:
        while True:
            frame = self.decoder.next_frame()
            if frame is not None:
                return frame.raw
            chunk = self.sock.recv(4096)
            if not chunk:
                raise ConnectionError("server closed the connection")
            self.decoder.feed(chunk)

    def at_eof(self) -> bool:
        try:
            return self.sock.recv(1) == b""
        except ConnectionResetError:
            # Closed by the server with unread request bytes still queued.
            return True

    def close(self) -> None:
        self.sock.close()


class ServerTestCase(unittest.TestCase):
    """Starts a server per test."""

    server_options: dict = {}

    def setUp(self):
        self.temp_dir = os.path.realpath(tempfile.mkdtemp())
        self.socket_path = Path(self.temp_dir) / "socket"
        self.listener = bind_listener(self.socket_path)
        self.state = DaemonState()
        self.server = RongServer(self.listener, self.state, **self.server_options)
        self.thread = threading.Thread(
            target=self.server.serve_forever,
            kwargs={"poll_interval": 0.05},
            daemon=True,
        )
        self.thread.start()

    def tearDown(self):
        self.server.stop()
        self.thread.join(5)
        self.listener.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def connect(self) -> RawConnection:
        conn = RawConnection(self.socket_path)
        self.addCleanup(conn.close)
        return conn

    def wait_for(self, predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()


class TestServerScenarios(ServerTestCase):
    """Request/response behaviour over a live socket."""

    def test_greeting(self):
        conn = self.connect()
        self.assertEqual(conn.greeting, f"OK {GREETING}\n")
        match = GREETING_RE.match(conn.greeting[3:])
        self.assertIsNotNone(match)
        self.assertEqual(match.group(1), __version__)

    def test_new_connection_starts_at_root(self):
        conn = self.connect()
        self.assertEqual(conn.request("cd"), "OK /\n")

    def test_load_and_cat_exact_text(self):
        with open(os.path.join(self.temp_dir, "test file.txt"), "wb") as f:
            f.write(b"abc")

        conn = self.connect()
        conn.request(f"cd {self.temp_dir}")
        self.assertEqual(conn.request('load "test file.txt"'), "OK\n")
        self.assertEqual(conn.request(r"cat test\ file.txt"), "..OK\nabc\n.\n")

    def test_list_sorted_paths(self):
        self.state.buffers.put("/b", "")
        self.state.buffers.put("/a", "")
        conn = self.connect()
        self.assertEqual(conn.request("list"), ".OK\n/a\n/b\n.\n")

    def test_cd_nonexistent(self):
        conn = self.connect()
        self.assertEqual(
            conn.request("cd /nonexistent"),
            "ERR Command 'cd': Directory does not exist\n",
        )

    def test_errors_do_not_end_the_connection(self):
        conn = self.connect()
        for name in ("a.txt", "b.txt", "c.txt"):
            self.assertEqual(conn.request(f"cat {name}"), "ERR Command 'cat': No such file loaded\n")
        self.assertEqual(conn.request("list"), ".OK\n.\n")

    def test_malformed_request(self):
        conn = self.connect()
        response = conn.request('load "unterminated')
        self.assertTrue(response.startswith("ERR Malformed request: "))
        self.assertEqual(conn.request("cd"), "OK /\n")

    def test_exit_closes_only_that_connection(self):
        leaving = self.connect()
        staying = self.connect()

        self.assertEqual(leaving.request("exit"), "OK\n")
        self.assertTrue(leaving.at_eof())

        self.assertEqual(staying.request("cd"), "OK /\n")
        self.assertTrue(self.wait_for(lambda: len(self.state.sessions) == 1))

    def test_requests_after_exit_are_dropped(self):
        conn = self.connect()
        conn.send(b"exit\nlist\n")
        self.assertEqual(conn.read(), "OK\n")
        self.assertTrue(conn.at_eof())

    def test_fragmented_and_batched_requests(self):
        conn = self.connect()
        conn.send(b"c")
        time.sleep(0.05)
        conn.send(b"d\nhelp -\nli")
        time.sleep(0.05)
        conn.send(b"st\n")

        self.assertEqual(conn.read(), "OK /\n")
        self.assertEqual(conn.read(), "OK cd cat kill list load save help exit\n")
        self.assertEqual(conn.read(), ".OK\n.\n")

    def test_crlf_line_endings(self):
        conn = self.connect()
        self.assertEqual(conn.request("cd\r"), "OK /\n")

    def test_abrupt_disconnect_tears_down_session(self):
        conn = RawConnection(self.socket_path)
        self.assertTrue(self.wait_for(lambda: len(self.state.sessions) == 1))
        conn.send(b"cat half-a-requ")
        conn.close()

        self.assertTrue(self.wait_for(lambda: len(self.state.sessions) == 0))
        self.assertEqual(self.connect().request("cd"), "OK /\n")

    def test_many_clients_keep_their_own_directory(self):
        conns = []
        for i in range(8):
            path = os.path.join(self.temp_dir, f"dir{i}")
            os.mkdir(path)
            conn = self.connect()
            self.assertEqual(conn.request(f"cd {path}"), f"OK {path}\n")
            conns.append((conn, path))

        for conn, path in reversed(conns):
            self.assertEqual(conn.request("cd"), f"OK {path}\n")
        self.assertEqual(len(self.state.sessions), 8)

    def test_concurrent_clients_share_buffers(self):
        with open(os.path.join(self.temp_dir, "shared.txt"), "wb") as f:
            f.write(b"shared\n")
        path = os.path.join(self.temp_dir, "shared.txt")
        errors = []

        def client(index):
            try:
                conn = RawConnection(self.socket_path)
                try:
                    for _ in range(20):
                        response = conn.request(f"cat {path}")
                        if response != "..OK\nshared\n\n.\n":
                            errors.append((index, response))
                finally:
                    conn.close()
            except OSError as e:
                errors.append((index, e))

        loader = self.connect()
        self.assertEqual(loader.request(f"load {path}"), "OK\n")

        threads = [threading.Thread(target=client, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        self.assertEqual(errors, [])

    def test_stop_closes_client_connections(self):
        conn = self.connect()
        self.server.stop()
        self.thread.join(5)
        self.assertFalse(self.thread.is_alive())
        self.assertTrue(conn.at_eof())


class TestDaemonClientAgainstServer(ServerTestCase):
    """DaemonClient transactions against a live server."""

    def test_connect_validates_greeting(self):
        with DaemonClient(self.socket_path, timeout=5).connect() as client:
            self.assertEqual(client.server_version, __version__)
            self.assertEqual(client.greeting, GREETING)

    def test_request_round_trip(self):
        with open(os.path.join(self.temp_dir, "a b.txt"), "wb") as f:
            f.write(b"hello\n")

        with DaemonClient(self.socket_path, timeout=5).connect() as client:
            self.assertEqual(client.chdir(self.temp_dir), (True, self.temp_dir))
            self.assertEqual(client.request("load", "a b.txt"), (True, ""))
            self.assertEqual(client.request("cat", "a b.txt"), (True, "hello\n"))
            self.assertEqual(
                client.request("list"),
                (True, os.path.join(self.temp_dir, "a b.txt") + "\n"),
            )
            self.assertEqual(
                client.request("cat", "nope"),
                (False, "Command 'cat': No such file loaded"),
            )

    def test_command_names(self):
        with DaemonClient(self.socket_path, timeout=5).connect() as client:
            self.assertEqual(
                client.command_names(),
                ["cd", "cat", "kill", "list", "load", "save", "help", "exit"],
            )

    def test_raw_send_command(self):
        self.state.buffers.put(".hidden", "")
        with DaemonClient(self.socket_path, timeout=5).connect() as client:
            self.assertEqual(client.send_command("list", raw=True), (True, ".OK\n..hidden\n.\n"))
            self.assertEqual(client.send_command("list"), (True, ".hidden\n"))

    def test_after_exit_server_is_gone(self):
        with DaemonClient(self.socket_path, timeout=5).connect() as client:
            self.assertEqual(client.request("exit"), (True, ""))
            self.assertTrue(
                self.wait_for(lambda: not client.is_server_alive() or client.sock is None)
            )
            self.assertEqual(client.request("list"), (False, ""))


class TestRequestLimits(ServerTestCase):

    server_options = {"max_request_bytes": 64, "chunk_size": 16}

    def test_overlong_request_is_rejected(self):
        conn = self.connect()
        conn.send(b"x" * 80)
        self.assertEqual(conn.read(), "ERR Request too long\n")
        self.assertTrue(conn.at_eof())

    def test_small_chunks_still_reassemble(self):
        conn = self.connect()
        self.assertEqual(
            conn.request("help - and some padding"),
            "ERR Command 'help': Too many arguments.\n",
        )
        self.assertEqual(conn.request("help -"), "OK cd cat kill list load save help exit\n")


class TestBootstrapHelpers(unittest.TestCase):
    """Socket and lock handling done before the loop starts."""

    def setUp(self):
        self.temp_dir = os.path.realpath(tempfile.mkdtemp())
        self.socket_path = Path(self.temp_dir) / "socket"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_bind_listener_sets_permissions(self):
        listener = bind_listener(self.socket_path)
        self.addCleanup(listener.close)
        self.assertEqual(os.stat(self.socket_path).st_mode & 0o777, 0o600)

    def test_bind_listener_replaces_stale_socket(self):
        stale = bind_listener(self.socket_path)
        stale.close()
        self.assertTrue(self.socket_path.exists())

        listener = bind_listener(self.socket_path)
        self.addCleanup(listener.close)
        self.assertTrue(self.socket_path.exists())

    def test_bind_listener_refuses_live_socket(self):
        listener = bind_listener(self.socket_path)
        self.addCleanup(listener.close)
        with self.assertRaises(DaemonAlreadyRunning):
            bind_listener(self.socket_path)

    def test_acquire_lock_is_exclusive(self):
        lock_path = Path(self.temp_dir) / "socket.lock"
        lock_file = acquire_lock(lock_path)
        self.addCleanup(lock_file.close)
        with self.assertRaises(DaemonAlreadyRunning):
            acquire_lock(lock_path)

    def test_run_daemon_fails_when_socket_is_taken(self):
        listener = bind_listener(self.socket_path)
        self.addCleanup(listener.close)
        config = get_daemon_config({"socket": str(self.socket_path)})

        with patch("rong.daemon.server.configure_logging"):
            self.assertEqual(run_daemon(config=config), 1)
        self.assertTrue(self.socket_path.exists())

    def test_secure_runtime_dir_creates_private_directory(self):
        runtime_dir = Path(self.temp_dir) / "rong-new"
        secure_runtime_dir(runtime_dir)
        self.assertEqual(stat.S_IMODE(os.stat(runtime_dir).st_mode), 0o700)

    def test_secure_runtime_dir_tightens_existing_directory(self):
        runtime_dir = Path(self.temp_dir) / "rong-shared"
        runtime_dir.mkdir()
        os.chmod(runtime_dir, 0o777)

        secure_runtime_dir(runtime_dir)
        self.assertEqual(stat.S_IMODE(os.stat(runtime_dir).st_mode), 0o700)

    def test_secure_runtime_dir_rejects_symlink(self):
        target = Path(self.temp_dir) / "elsewhere"
        target.mkdir(mode=0o700)
        link = Path(self.temp_dir) / "rong-link"
        link.symlink_to(target)

        with self.assertRaises(PermissionError):
            secure_runtime_dir(link)

    def test_secure_runtime_dir_rejects_foreign_owner(self):
        runtime_dir = Path(self.temp_dir) / "rong-foreign"
        runtime_dir.mkdir()
        os.chmod(runtime_dir, 0o777)

        with patch("rong.daemon.server.os.getuid", return_value=os.getuid() + 1):
            with self.assertRaises(PermissionError):
                secure_runtime_dir(runtime_dir)
        self.assertEqual(stat.S_IMODE(os.stat(runtime_dir).st_mode), 0o777)

    def test_run_daemon_refuses_unsafe_runtime_dir(self):
        target = Path(self.temp_dir) / "elsewhere"
        target.mkdir(mode=0o700)
        link = Path(self.temp_dir) / "rong-link"
        link.symlink_to(target)
        config = get_daemon_config({"socket": str(link / "socket")})

        with patch("rong.daemon.server.configure_logging"):
            with self.assertLogs("rong.daemon.server", level="CRITICAL") as logs:
                self.assertEqual(run_daemon(config=config), 1)
        self.assertIn("Fatal: unusable runtime directory", logs.output[0])
        self.assertEqual(os.listdir(target), [])

    def test_run_daemon_cleans_up_after_early_sigterm(self):
        config = get_daemon_config({"socket": str(self.socket_path)})

        with patch("rong.daemon.server.configure_logging"), patch(
            "rong.daemon.server.install_signal_handlers",
            side_effect=ServerExit(signal.SIGTERM),
        ):
            with self.assertLogs("rong.daemon.server", level="INFO") as logs:
                self.assertEqual(run_daemon(config=config), 0)

        self.assertIn("Server exited (SIGTERM)", "\n".join(logs.output))
        self.assertFalse(self.socket_path.exists())
        self.assertFalse(config.pid_path.exists())

    def test_daemon_process_survives_sighup_and_exits_on_sigterm(self):
        runtime_dir = Path(self.temp_dir) / "rong-shared"
        runtime_dir.mkdir()
        os.chmod(runtime_dir, 0o777)
        socket_path = runtime_dir / "socket"
        pid_path = runtime_dir / "rongd.pid"
        log_path = Path(self.temp_dir) / "rongd.out"

        env = {key: value for key, value in os.environ.items() if not key.startswith("RONG_")}
        env["HOME"] = self.temp_dir
        env["PYTHONPATH"] = os.pathsep.join(
            filter(None, [str(PROJECT_ROOT), os.environ.get("PYTHONPATH")])
        )
        with open(log_path, "wb") as log:
            proc = subprocess.Popen(
                [sys.executable, "-m", "rong.daemon.server", "--socket-path", str(socket_path)],
                cwd=self.temp_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
            )
        self.addCleanup(self._reap, proc)

        # The pid file is written once the signal handlers are in place.
        deadline = time.monotonic() + 10
        while not (pid_path.exists() and is_daemon_running(socket_path)):
            self.assertIsNone(proc.poll(), log_path.read_text())
            self.assertLess(time.monotonic(), deadline, "daemon did not start")
            time.sleep(0.05)
        self.assertEqual(stat.S_IMODE(os.stat(runtime_dir).st_mode), 0o700)

        proc.send_signal(signal.SIGHUP)
        time.sleep(0.2)
        self.assertIsNone(proc.poll())
        with DaemonClient(socket_path, timeout=5).connect() as client:
            self.assertEqual(client.server_version, __version__)

        proc.send_signal(signal.SIGTERM)
        self.assertEqual(proc.wait(10), 0)

        output = log_path.read_text()
        self.assertIn("Server exited (SIGTERM)", output)
        self.assertFalse(socket_path.exists())
        self.assertFalse(pid_path.exists())

    def _reap(self, proc):
        if proc.poll() is None:
            proc.kill()
            proc.wait(5)

    def test_main_version(self):
        with self.assertRaises(SystemExit) as ctx:
            main(["--version"])
        self.assertEqual(ctx.exception.code, 0)


if __name__ == "__main__":
    unittest.main()
