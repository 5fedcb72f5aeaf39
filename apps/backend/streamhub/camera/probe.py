from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from streamhub.util.logging import get_logger
from streamhub.util.security import sanitize_rtsp_url

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    width: int | None = None
    height: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "message": self.message, "width": self.width, "height": self.height}


class RTSPProbe:
    """One-shot RTSP connectivity check: open the stream and read a single frame."""

    def __init__(self, rtsp_url: str, timeout_ms: int = 1500) -> None:
        self.rtsp_url = rtsp_url
        self.safe_url = sanitize_rtsp_url(rtsp_url)
        self.timeout_ms = timeout_ms
        self.capture: cv2.VideoCapture | None = None

    def connect(self) -> bool:
        self.close()
        self.capture = cv2.VideoCapture(self.rtsp_url, cv2.CAP_FFMPEG)
        if hasattr(cv2, "CAP_PROP_OPEN_TIMEOUT_MSEC"):
            self.capture.set(cv2.CAP_PROP_OPEN_TIMEOUT_MSEC, self.timeout_ms)
        if hasattr(cv2, "CAP_PROP_READ_TIMEOUT_MSEC"):
            self.capture.set(cv2.CAP_PROP_READ_TIMEOUT_MSEC, self.timeout_ms)
        self.capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        return bool(self.capture.isOpened())

    def read_frame(self) -> np.ndarray | None:
        if self.capture is None:
            return None
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        return frame

    def close(self) -> None:
        if self.capture is not None:
            self.capture.release()
        self.capture = None

    def run(self) -> ProbeResult:
        try:
            if not self.connect():
                return ProbeResult(False, "Unable to connect")
            frame = self.read_frame()
            if frame is None:
                return ProbeResult(False, "Connected but no frames")
            height, width = frame.shape[:2]
            return ProbeResult(True, "Camera stream looks healthy", width=int(width), height=int(height))
        except cv2.error as exc:
            logger.warning("rtsp probe failed for %s: %s", self.safe_url, exc)
            return ProbeResult(False, "Probe failed")
        finally:
            self.close()


def probe_rtsp(rtsp_url: str, timeout_ms: int = 1500) -> ProbeResult:
    return RTSPProbe(rtsp_url, timeout_ms=timeout_ms).run()
