from __future__ import annotations

import io
import logging
import queue
import threading
import wave
from typing import Dict, List, Optional

import numpy as np

from config import CaptureConfig
from stt_core import AudioChunk

# sounddevice needs PortAudio at import time, so it is imported inside the capture
# code paths only; everything else in this module works without it.

DUAL_LOG = logging.getLogger("dual_stt")

SAMPLE_RATE = 16000
FRAME_MS = 10
FRAME_SAMPLES = SAMPLE_RATE * FRAME_MS // 1000  # 160 samples @16 kHz, 10 ms frame

WAV_MIME = "audio/wav"


# ---------------------------------------------------------------------------
# Device helpers


def list_input_devices() -> List[Dict[str, object]]:
    import sounddevice as sd

    devices: List[Dict[str, object]] = []
    for i, dev in enumerate(sd.query_devices()):
        if dev["max_input_channels"] > 0:
            devices.append({"index": i, "name": dev["name"], "channels": dev["max_input_channels"]})
    return devices


def pick_default_mic() -> Optional[int]:
    devs = list_input_devices()
    if not devs:
        return None
    preferred = None
    fallback = devs[0]
    for device in devs:
        name_low = str(device.get("name", "")).lower()
        if any(bad in name_low for bad in ("blackhole", "loopback", "soundflower")):
            continue
        if preferred is None and "microphone" in name_low:
            preferred = device
    return (preferred or fallback)["index"]


def pcm_to_wav(pcm16: bytes, sample_rate: int = SAMPLE_RATE) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm16)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Capture


class AudioCapture(threading.Thread):
    """Reads mono PCM16 frames from an input device into ``out_q``."""

    def __init__(self, label: str, device_idx: Optional[int], out_q: "queue.Queue[bytes]"):
        super().__init__(daemon=True)
        self.label = label
        self.device_idx = device_idx
        self.out_q = out_q
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        import sounddevice as sd

        def cb(indata, _frames, _time_info, status):
            if status:
                DUAL_LOG.debug("%s status: %s", self.label, status)
            if self._stop_event.is_set():
                raise sd.CallbackStop()

            frame = indata[:, 0].astype(np.float32)
            pcm16 = np.clip(frame * 32768.0, -32768, 32767).astype(np.int16)
            try:
                self.out_q.put_nowait(pcm16.tobytes())
            except queue.Full:
                DUAL_LOG.warning("%s dropped frame: queue full", self.label)

        with sd.InputStream(
            samplerate=SAMPLE_RATE,
            channels=1,
            dtype="float32",
            blocksize=FRAME_SAMPLES,
            latency="low",
            device=self.device_idx,
            callback=cb,
        ):
            while not self._stop_event.is_set():
                sd.sleep(100)


class ChunkAssembler:
    """Groups PCM frames into capture windows and numbers the chunks it emits.

    Each emitted chunk holds every frame captured so far as one WAV file, so a
    transcription of the latest chunk replaces the previous partial text.
    ``last_window`` keeps only the newest window for push-style sessions.
    """

    def __init__(self, config: Optional[CaptureConfig] = None, sample_rate: int = SAMPLE_RATE):
        self.cfg = config or CaptureConfig.from_env()
        self.sample_rate = sample_rate
        self._window_bytes = max(2, self.sample_rate * self.cfg.chunk_ms // 1000 * 2)
        self._frames: List[bytes] = []
        self._window: List[bytes] = []
        self._window_len = 0
        self._sequence = 0
        self.last_window = b""

    @property
    def captured_seconds(self) -> float:
        total = sum(len(f) for f in self._frames)
        return total / 2 / self.sample_rate

    def add_frame(self, pcm16: bytes) -> Optional[AudioChunk]:
        if not pcm16:
            return None
        self._frames.append(pcm16)
        self._window.append(pcm16)
        self._window_len += len(pcm16)
        if self._window_len < self._window_bytes:
            return None
        return self._emit()

    def flush(self) -> Optional[AudioChunk]:
        if not self._window:
            return None
        return self._emit()

    def merged(self) -> bytes:
        """All captured audio as a single WAV, or b"" when nothing was captured."""
        if not self._frames:
            return b""
        return pcm_to_wav(b"".join(self._frames), self.sample_rate)

    def _emit(self) -> AudioChunk:
        self.last_window = pcm_to_wav(b"".join(self._window), self.sample_rate)
        self._window.clear()
        self._window_len = 0
        self._sequence += 1
        return AudioChunk(data=self.merged(), mime_type=WAV_MIME, sequence=self._sequence)


__all__ = [
    "SAMPLE_RATE",
    "FRAME_MS",
    "FRAME_SAMPLES",
    "WAV_MIME",
    "list_input_devices",
    "pick_default_mic",
    "pcm_to_wav",
    "AudioCapture",
    "ChunkAssembler",
]
