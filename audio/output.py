"""Audio outputs used by the surrogate: a sounddevice stream and a system player fallback."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import platform
import shutil
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import numpy as np
import soundfile as sf

from infra.errors import DecodeError, PlaybackDeviceError
from infra.logging import log_event

logger = logging.getLogger("speakflow.output")

FinishedCallback = Callable[[str | None], None]


def _sounddevice() -> Any:
    # Imported on use: loading the module fails outright on hosts without PortAudio.
    import sounddevice

    return sounddevice


@dataclass(frozen=True)
class DecodedAudio:
    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_s(self) -> float:
        return len(self.samples) / float(self.sample_rate)


def decode_audio(data: bytes) -> DecodedAudio:
    """Decode WAV/FLAC/OGG (and MP3 with libsndfile >= 1.1) into float32 frames."""
    try:
        samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (RuntimeError, TypeError, ValueError) as exc:
        raise DecodeError(f"cannot decode audio: {exc}") from exc
    if samples.size == 0:
        raise DecodeError("decoded audio is empty")
    return DecodedAudio(samples=samples, sample_rate=int(sample_rate))


def audio_duration(data: bytes) -> float:
    try:
        return float(sf.info(io.BytesIO(data)).duration)
    except (RuntimeError, TypeError, ValueError) as exc:
        raise DecodeError(f"cannot read audio header: {exc}") from exc


def guess_suffix(data: bytes) -> str:
    if data[:4] == b"RIFF":
        return ".wav"
    if data[:4] == b"OggS":
        return ".ogg"
    if data[:4] == b"fLaC":
        return ".flac"
    if data[:3] == b"ID3" or data[:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return ".mp3"
    return ".bin"


class AudioOutput(Protocol):
    """A playback mechanism the surrogate can drive.

    ``prepare`` turns encoded bytes into a reusable buffer, ``play`` starts
    from that buffer (again, for manual loops) and ``release`` frees it.
    ``on_finished`` receives ``None`` on a natural end or an error message.
    """

    name: str
    supports_native_loop: bool

    def prepare(self, data: bytes) -> float: ...

    async def play(self, *, loop: bool, on_finished: FinishedCallback) -> None: ...

    def stop(self) -> None: ...

    def is_active(self) -> bool: ...

    def release(self) -> None: ...


class SoundDeviceOutput:
    """Primary output: soundfile decode, PortAudio stream with intrinsic repeat."""

    name = "sounddevice"
    supports_native_loop = True

    def __init__(self, *, blocksize: int = 1024, device: int | str | None = None) -> None:
        self._blocksize = blocksize
        self._device = device
        self._buffer: DecodedAudio | None = None
        self._stream: Any | None = None
        self._position = 0
        self._loop = False
        self._on_finished: FinishedCallback | None = None
        self._owner: asyncio.AbstractEventLoop | None = None

    @staticmethod
    def probe() -> bool:
        """Whether PortAudio loads and a default output device is available."""
        try:
            sd = _sounddevice()
        except OSError:
            return False
        try:
            sd.query_devices(kind="output")
        except (sd.PortAudioError, ValueError):
            return False
        return True

    def prepare(self, data: bytes) -> float:
        self._buffer = decode_audio(data)
        return self._buffer.duration_s

    async def play(self, *, loop: bool, on_finished: FinishedCallback) -> None:
        if self._buffer is None:
            raise PlaybackDeviceError("nothing prepared")
        try:
            sd = _sounddevice()
        except OSError as exc:
            raise PlaybackDeviceError(f"PortAudio is not available: {exc}") from exc
        self.stop()
        self._owner = asyncio.get_running_loop()
        self._position = 0
        self._loop = loop
        self._on_finished = on_finished
        try:
            stream = sd.OutputStream(
                samplerate=self._buffer.sample_rate,
                channels=self._buffer.channels,
                dtype="float32",
                blocksize=self._blocksize,
                device=self._device,
                callback=self._fill,
                finished_callback=self._finished,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._on_finished = None
            raise PlaybackDeviceError(f"output device refused playback: {exc}") from exc
        self._stream = stream

    def stop(self) -> None:
        self._loop = False
        self._on_finished = None
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.abort()
            stream.close()
        except _sounddevice().PortAudioError as exc:
            log_event(logger, logging.WARNING, "stream close failed", event_type="output_stop_failed", error=str(exc))

    def is_active(self) -> bool:
        return self._stream is not None and bool(self._stream.active)

    def release(self) -> None:
        self.stop()
        self._buffer = None

    def _fill(self, outdata: np.ndarray, frames: int, time_info: object, status: object) -> None:
        buffer = self._buffer
        if buffer is None:
            outdata.fill(0)
            raise _sounddevice().CallbackStop()
        samples = buffer.samples
        written = 0
        while written < frames:
            remaining = len(samples) - self._position
            if remaining <= 0:
                if self._loop:
                    self._position = 0
                    continue
                outdata[written:] = 0
                raise _sounddevice().CallbackStop()
            count = min(frames - written, remaining)
            outdata[written : written + count] = samples[self._position : self._position + count]
            self._position += count
            written += count

    def _finished(self) -> None:
        callback, owner = self._on_finished, self._owner
        if callback is None or owner is None:
            return
        owner.call_soon_threadsafe(callback, None)


def default_player_command(preference: str = "auto") -> list[str] | None:
    if preference and preference != "auto":
        return preference.split()
    candidates: list[list[str]] = []
    if platform.system() == "Darwin":
        candidates.append(["afplay"])
    candidates += [
        ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet"],
        ["paplay"],
        ["aplay", "-q"],
    ]
    for command in candidates:
        if shutil.which(command[0]):
            return command
    return None


class SubprocessOutput:
    """Secondary output: a temporary file played by a system audio player."""

    name = "subprocess"
    supports_native_loop = False

    def __init__(self, command: Sequence[str] | None = None) -> None:
        self._command = list(command) if command else None
        self._temp_path: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._waiter: asyncio.Task | None = None

    def prepare(self, data: bytes) -> float:
        if not data:
            raise DecodeError("audio payload is empty")
        self.release()
        fd, path = tempfile.mkstemp(prefix="speakflow-", suffix=guess_suffix(data))
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        self._temp_path = path
        try:
            return audio_duration(data)
        except DecodeError:
            return 0.0

    async def play(self, *, loop: bool, on_finished: FinishedCallback) -> None:
        if self._temp_path is None:
            raise PlaybackDeviceError("nothing prepared")
        if self._command is None:
            raise PlaybackDeviceError("no system audio player found")
        self.stop()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._command,
                self._temp_path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise PlaybackDeviceError(f"cannot start {self._command[0]}: {exc}") from exc
        self._process = process
        self._waiter = asyncio.get_running_loop().create_task(self._wait(process, on_finished))

    def stop(self) -> None:
        process, self._process = self._process, None
        waiter, self._waiter = self._waiter, None
        if waiter is not None:
            waiter.cancel()
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    def is_active(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def release(self) -> None:
        self.stop()
        path, self._temp_path = self._temp_path, None
        if path is not None:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    async def _wait(self, process: asyncio.subprocess.Process, on_finished: FinishedCallback) -> None:
        code = await process.wait()
        if self._process is not process:
            return
        self._process = None
        self._waiter = None
        on_finished(None if code == 0 else f"player exited with status {code}")
