from __future__ import annotations

import os
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from pathlib import Path

import psutil

from streamhub.config.defaults import MANIFEST_NAME, SEGMENT_PATTERN
from streamhub.config.schema import StreamSettings
from streamhub.util.logging import get_logger
from streamhub.util.security import redact_secrets, sanitize_rtsp_url

logger = get_logger(__name__)


class TranscodeProcess(ABC):
    @property
    @abstractmethod
    def pid(self) -> int | None:
        raise NotImplementedError

    @abstractmethod
    def poll(self) -> int | None:
        raise NotImplementedError

    @abstractmethod
    def wait(self, timeout: float) -> int | None:
        """Return the exit code, or None if the process is still running after ``timeout``."""
        raise NotImplementedError

    @abstractmethod
    def terminate(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def kill(self) -> None:
        raise NotImplementedError

    def stderr_tail(self) -> str:
        return ""


ProcessLauncher = Callable[[str, str, Path], TranscodeProcess]


def build_transcode_command(input_url: str, settings: StreamSettings) -> list[str]:
    """Build the HLS command line; output paths are relative to the stream area used as cwd."""
    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "warning",
        "-rtsp_transport",
        settings.rtsp_transport,
        *settings.extra_input_args,
        "-i",
        input_url,
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        *settings.extra_output_args,
        "-f",
        "hls",
        "-hls_time",
        f"{settings.segment_seconds:g}",
        "-hls_list_size",
        str(settings.playlist_size),
        "-hls_flags",
        "temp_file+independent_segments+omit_endlist",
        "-hls_start_number_source",
        "epoch",
        "-hls_segment_filename",
        SEGMENT_PATTERN,
        "-y",
        MANIFEST_NAME,
    ]


class FFmpegProcess(TranscodeProcess):
    def __init__(self, command: list[str], cwd: Path, source_id: str, tail_lines: int = 20) -> None:
        self.source_id = source_id
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._tail_lock = threading.Lock()
        self._popen = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            cwd=str(cwd),
            text=True,
            errors="replace",
            start_new_session=os.name != "nt",
        )
        self._drain = threading.Thread(
            target=self._drain_stderr,
            name=f"transcode-stderr-{source_id}",
            daemon=True,
        )
        self._drain.start()

    @property
    def pid(self) -> int | None:
        return self._popen.pid

    def poll(self) -> int | None:
        return self._popen.poll()

    def wait(self, timeout: float) -> int | None:
        try:
            return self._popen.wait(timeout=max(0.0, timeout))
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        try:
            self._popen.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass

    def stderr_tail(self) -> str:
        with self._tail_lock:
            return redact_secrets("\n".join(self._tail))

    def _drain_stderr(self) -> None:
        stream = self._popen.stderr
        if stream is None:
            return
        try:
            for line in stream:
                text = line.strip()
                if not text:
                    continue
                with self._tail_lock:
                    self._tail.append(text)
                logger.debug("transcoder[%s]: %s", self.source_id, text)
        except (OSError, ValueError):
            logger.debug("transcoder stderr closed: %s", self.source_id, exc_info=True)
        finally:
            try:
                stream.close()
            except OSError:
                pass


class FFmpegLauncher:
    def __init__(self, settings: StreamSettings) -> None:
        self.settings = settings

    def __call__(self, source_id: str, input_url: str, area: Path) -> TranscodeProcess:
        command = build_transcode_command(input_url, self.settings)
        logger.info(
            "starting transcoder for %s from %s",
            source_id,
            sanitize_rtsp_url(input_url),
        )
        return FFmpegProcess(command, cwd=area, source_id=source_id)


def terminate_process(process: TranscodeProcess, grace_seconds: float) -> int | None:
    exit_code = process.poll()
    if exit_code is not None:
        return exit_code
    process.terminate()
    exit_code = process.wait(grace_seconds)
    if exit_code is not None:
        return exit_code
    logger.warning("transcoder pid=%s ignored terminate, killing", process.pid)
    process.kill()
    return process.wait(max(1.0, grace_seconds))


def find_orphaned_transcoders(streams_dir: Path) -> list[psutil.Process]:
    root = streams_dir.resolve()
    current_pid = os.getpid()
    orphaned: list[psutil.Process] = []

    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            if proc.pid == current_pid:
                continue
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if "-f hls" not in cmdline or MANIFEST_NAME not in cmdline:
                continue
            if not Path(proc.cwd()).resolve().is_relative_to(root):
                continue
            parent = proc.parent()
            if parent is None or parent.pid in (0, 1):
                orphaned.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return orphaned


def cleanup_orphaned_transcoders(streams_dir: Path, timeout: float = 5.0) -> int:
    orphaned = find_orphaned_transcoders(streams_dir)
    if not orphaned:
        return 0

    logger.info("found %d orphaned transcoder process(es)", len(orphaned))
    terminated: list[psutil.Process] = []
    for proc in orphaned:
        try:
            logger.warning("terminating orphaned transcoder pid=%d", proc.pid)
            proc.terminate()
            terminated.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    _, alive = psutil.wait_procs(terminated, timeout=timeout)
    for proc in alive:
        try:
            logger.warning("force killing orphaned transcoder pid=%d", proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if alive:
        psutil.wait_procs(alive, timeout=1.0)
    return len(terminated)
