# File: reason_bridge/merlin/client.py

"""Provides an asynchronous client for the merlin analyzer process.

This module defines the `MerlinClient` class, responsible for managing an
`ocamlmerlin` subprocess and exchanging newline-delimited JSON commands and
replies with it over stdio. Merlin answers commands strictly in the order it
receives them, so replies are correlated with requests through a FIFO of
pending futures rather than request ids.

Every request returns a tagged `MerlinResponse`. Transport problems (missing
executable, broken pipe, closed stream, timeouts) are logged and reported as
`exception` results instead of being raised, so that a single misbehaving
round-trip never takes the session down.
"""

import asyncio
import collections
import json
import logging
import os
import shutil
from typing import Any, Deque, Dict, List, Optional

from pygls.uris import to_fs_path

from reason_bridge.config.loader import get_merlin_path, get_merlin_timeout
from reason_bridge.merlin.protocol import MerlinResponse

logger = logging.getLogger(__name__)

# --- Constants ---
STREAM_LIMIT = 2**24  # Outline and error replies for large files exceed the default
CONTEXT_KIND = "auto"


class MerlinClient:
    """Manages communication with an `ocamlmerlin` process.

    Attributes:
        merlin_executable_path (str): Executable name or path of ocamlmerlin.
        cwd (Optional[str]): Working directory for the analyzer process.
        timeout (Optional[float]): Seconds to wait for one reply, or None to
            wait indefinitely.
        process (Optional[asyncio.subprocess.Process]): The running analyzer,
            spawned lazily on the first request.
    """

    def __init__(
        self,
        merlin_executable_path: str,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.merlin_executable_path = merlin_executable_path
        self.cwd = cwd
        self.timeout = timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self._pending: Deque[asyncio.Future] = collections.deque()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._start_lock: Optional[asyncio.Lock] = None
        self._closed = False

    async def initialize(self) -> None:
        """Resolves the analyzer executable.

        The process itself is started on the first request, inside whichever
        event loop issues it.
        """
        resolved = shutil.which(self.merlin_executable_path)
        if resolved:
            logger.info(f"Using merlin executable at '{resolved}'.")
            self.merlin_executable_path = resolved
        else:
            logger.warning(
                f"Merlin executable '{self.merlin_executable_path}' not found on PATH; "
                "analyzer requests will fail until it is installed."
            )

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start_server(self) -> None:
        """Starts the analyzer subprocess and its reader tasks.

        Raises:
            ConnectionError: If the client is closed or the process cannot be
                started.
        """
        if self._closed:
            raise ConnectionError("Client is closed.")
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if self.running:
                return
            logger.info(f"Starting merlin: {self.merlin_executable_path} in {self.cwd or os.getcwd()}")
            try:
                self.process = await asyncio.create_subprocess_exec(
                    self.merlin_executable_path,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                logger.error(f"Failed to start merlin '{self.merlin_executable_path}': {e}")
                raise ConnectionError(f"Failed to start merlin: {e}") from e

            self.reader = self.process.stdout
            self.writer = self.process.stdin
            if not self.reader or not self.writer:
                raise ConnectionError("Failed to get stdout/stdin streams from subprocess.")

            self._stderr_task = asyncio.create_task(
                self._read_stderr(), name="merlin_stderr_reader"
            )
            self._reader_task = asyncio.create_task(
                self._message_reader_loop(), name="merlin_message_reader"
            )
            logger.info("Merlin started successfully.")

    async def _read_stderr(self) -> None:
        """Logs the analyzer's stderr line by line until EOF."""
        if not self.process or not self.process.stderr:
            return
        try:
            while True:
                line = await self.process.stderr.readline()
                if not line:
                    break
                logger.warning(f"Merlin STDERR: {line.decode('utf-8', errors='replace').strip()}")
        except asyncio.CancelledError:
            logger.debug("Stderr reader task cancelled.")

    def _resolve_next(self, response: MerlinResponse) -> None:
        # Futures abandoned by a timed-out caller keep their slot so later
        # replies still line up with their requests.
        if not self._pending:
            logger.warning(f"Received analyzer reply with no pending request: {response}")
            return
        future = self._pending.popleft()
        if future.done():
            logger.debug("Discarding reply for an abandoned analyzer request.")
            return
        future.set_result(response)

    def _fail_pending(self, description: str) -> None:
        while self._pending:
            future = self._pending.popleft()
            if not future.done():
                future.set_result(MerlinResponse.exception(description))

    async def _message_reader_loop(self) -> None:
        """Reads one JSON reply per line and resolves pending requests in order."""
        logger.debug("Starting merlin reader loop.")
        try:
            while self.reader is not None:
                line = await self.reader.readline()
                if not line:
                    if not self._closed:
                        logger.error("Merlin closed its output stream.")
                    break
                try:
                    payload = json.loads(line.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    logger.error(f"Failed to decode merlin reply: {e}. Received: {line[:200]!r}")
                    self._resolve_next(MerlinResponse.exception(f"Undecodable reply: {e}"))
                    continue
                self._resolve_next(MerlinResponse.from_payload(payload))
        except asyncio.CancelledError:
            logger.debug("Merlin reader loop cancelled.")
        except (ConnectionError, ValueError) as e:
            if not self._closed:
                logger.exception(f"Error reading from merlin: {e}")
        finally:
            self._fail_pending("Analyzer connection closed while request was pending.")

    async def _send(self, request: List[Any], uri: str) -> MerlinResponse:
        if not self.running:
            try:
                await self.start_server()
            except ConnectionError as e:
                return MerlinResponse.exception(str(e))
        if not self.writer or self.writer.is_closing():
            return MerlinResponse.exception("Analyzer writer is not available.")

        message = {"context": [CONTEXT_KIND, to_fs_path(uri) or uri], "query": request}
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.append(future)
        try:
            self.writer.write(json.dumps(message).encode("utf-8") + b"\n")
            await self.writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.error(f"Connection error writing merlin request: {e}")
            if not future.done():
                future.set_result(MerlinResponse.exception(f"Connection error: {e}"))
            await self.close()
            return future.result()

        try:
            if self.timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for merlin reply to {request[0]!r} on {uri}.")
            return MerlinResponse.exception("Analyzer request timed out.")

    async def sync(self, operation: List[Any], uri: str) -> MerlinResponse:
        """Sends a state-changing command (e.g. `tell`) for a document."""
        logger.debug(f"Sending sync {operation[0]!r} for {uri}")
        response = await self._send(operation, uri)
        if not response.ok:
            logger.warning(f"Merlin sync failed for {uri}: {response.klass}: {response.value}")
        return response

    async def query(self, request: List[Any], uri: str) -> MerlinResponse:
        """Sends a read-only command (e.g. `errors`, `outline`) for a document."""
        logger.debug(f"Sending query {request[0]!r} for {uri}")
        response = await self._send(request, uri)
        if not response.ok:
            logger.debug(f"Merlin query {request[0]!r} failed for {uri}: {response.klass}")
        return response

    async def close(self) -> None:
        """Stops the reader tasks and terminates the analyzer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing merlin client.")

        for task in (self._reader_task, self._stderr_task):
            if task and not task.done():
                task.cancel()

        if self.writer and not self.writer.is_closing():
            try:
                self.writer.close()
            except (ConnectionError, RuntimeError) as e:
                logger.warning(f"Error closing merlin writer: {e}")
        self.writer = None
        self.reader = None

        proc = self.process
        self.process = None
        if proc and proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Merlin did not terminate after 5s, killing.")
                try:
                    proc.kill()
                    await proc.wait()
                except ProcessLookupError:
                    pass
            except ProcessLookupError:
                logger.debug("Merlin process already finished.")

        self._fail_pending("Analyzer client closed while request was pending.")

        tasks: List[asyncio.Task] = [t for t in (self._reader_task, self._stderr_task) if t]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._stderr_task = None
        logger.info("Merlin client closed.")


def client_from_settings(settings: Dict[str, Any], cwd: Optional[str] = None) -> MerlinClient:
    """Builds a client from the `reason.*` settings."""
    return MerlinClient(get_merlin_path(settings), cwd=cwd, timeout=get_merlin_timeout(settings))
