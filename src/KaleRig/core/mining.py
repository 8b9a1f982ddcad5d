"""External proof-of-work search process management."""
import json
import logging
import os
import re
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, List, Optional

from ..errors import MiningError
from .state import Session

HASH_RATE_RE = re.compile(r"([\d.]+\s*[KMGTP]?H/s)")
RESULT_RE = re.compile(r"\{[^{}]*\}")

# Shortest delay the kill timer is armed with, in seconds.
MIN_KILL_DELAY = 0.01


@dataclass
class SearchResult:
    hash: str
    nonce: int
    killed: bool = False


def parse_search_output(output: str) -> Optional[dict]:
    """Return the last JSON object holding ``hash`` and ``nonce`` in ``output``."""
    for candidate in reversed(RESULT_RE.findall(output)):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and "hash" in data and "nonce" in data:
            return data
    return None


class MiningProcessController:
    def __init__(
        self,
        executable: str,
        session: Session,
        max_threads: int = 4,
        batch_size: int = 10_000_000,
        device: int = 0,
        gpu: bool = False,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.executable = executable
        self.session = session
        self.max_threads = max_threads
        self.batch_size = batch_size
        self.device = device
        self.gpu = gpu
        self.verbose = verbose
        self.log = logger or logging.getLogger("KaleRig.mining")

    def build_command(self, block: int, hash: str, nonce: int, difficulty: int, account: str) -> List[str]:
        args = [
            os.path.abspath(self.executable),
            str(block), str(hash), str(nonce), str(difficulty), account,
            "--max-threads", str(self.max_threads),
            "--batch-size", str(self.batch_size),
            "--device", str(self.device),
        ]
        if self.gpu:
            args.append("--gpu")
        if self.verbose:
            args.append("--verbose")
        return args

    def run_search(
        self,
        block: int,
        hash: str,
        nonce: int,
        difficulty: int,
        account: str,
        kill_after: Optional[float] = None,
    ) -> SearchResult:
        """Run one search to completion, or until ``kill_after`` seconds pass.

        Blocks the caller. Telemetry is pushed into the session while the
        process runs; the parsed result is returned once it exits.
        """
        command = self.build_command(block, hash, nonce, difficulty, account)
        self.session.update(gpu=self.gpu)
        self.log.info("Farmer %s process started with command: %s", account, " ".join(command[1:]))

        try:
            proc = subprocess.Popen(
                command,
                cwd=os.path.dirname(command[0]) or None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise MiningError(f"Failed to start miner {command[0]}: {e}") from e

        output: List[str] = []
        pumps = [
            threading.Thread(target=self._pump_stdout, args=(proc.stdout, output), daemon=True),
            threading.Thread(target=self._pump_stderr, args=(proc.stderr, account), daemon=True),
        ]
        for pump in pumps:
            pump.start()

        killed = threading.Event()
        timer = None
        if kill_after is not None:
            delay = max(MIN_KILL_DELAY, kill_after)
            self.log.info("Farmer %s killing mining process in %.2fms", account, delay * 1000)
            timer = threading.Timer(delay, self._kill, args=(proc, killed, account, delay))
            timer.daemon = True
            timer.start()

        try:
            returncode = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            for pump in pumps:
                pump.join()

        self.log.info("Farmer %s process completed: code(%s)", account, returncode)
        result = parse_search_output("".join(output))
        if result is None:
            raise MiningError("No result found", returncode=returncode, killed=killed.is_set())
        if returncode != 0 and not killed.is_set():
            raise MiningError(f"Miner exited with code {returncode}", returncode=returncode)
        try:
            return SearchResult(hash=str(result["hash"]), nonce=int(result["nonce"]), killed=killed.is_set())
        except (TypeError, ValueError) as e:
            raise MiningError(f"Invalid miner result {result}: {e}", returncode=returncode) from e

    def _pump_stdout(self, stream: IO[str], output: List[str]) -> None:
        for line in iter(stream.readline, ""):
            if not line.strip():
                continue
            try:
                self.log.debug(line.rstrip())
                output.append(line if line.endswith("\n") else line + "\n")
                if "Hash Rate" in line:
                    match = HASH_RATE_RE.search(line)
                    self.session.update(hashrate=match.group(1) if match else "")
            except Exception as e:
                self.log.error(f"Failed to handle miner output line: {e}", exc_info=True)
        stream.close()

    def _pump_stderr(self, stream: IO[str], account: str) -> None:
        for line in iter(stream.readline, ""):
            if line.strip():
                self.log.warning("Farmer %s miner: %s", account, line.rstrip())
        stream.close()

    def _kill(self, proc: subprocess.Popen, killed: threading.Event, account: str, delay: float) -> None:
        if proc.poll() is not None:
            return
        try:
            killed.set()
            proc.terminate()
            self.log.info("Farmer %s killed mining process after %.0fms", account, delay * 1000)
        except OSError as e:
            self.log.error("Farmer %s failed to kill mining process: %s", account, e)
