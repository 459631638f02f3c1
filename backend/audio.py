"""Microphone audio to 16 kHz PCM16 frames.

The resampler is driven by a real-time callback: ``process`` only touches a
fixed-size frame buffer and hands each completed frame to ``post`` exactly
once. Decimation is nearest-neighbor at a fixed ratio with no anti-aliasing
filter, which is enough for speech recognition.
"""
import math
from typing import Callable, Optional

import numpy as np

TARGET_RATE = 16000
FRAME_SAMPLES = 800  # 50 ms at 16 kHz


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clip to [-1, 1], then scale negatives by 0x8000 and positives by 0x7FFF, truncating toward zero."""
    clipped = np.clip(samples.astype(np.float64, copy=False), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return np.trunc(scaled).astype(np.int16)


class PcmResampler:
    def __init__(
        self,
        native_rate: int,
        post: Callable[[bytes], None],
        target_rate: int = TARGET_RATE,
        frame_samples: int = FRAME_SAMPLES,
    ):
        if native_rate < target_rate:
            raise ValueError(f"Native rate {native_rate} is below the target rate {target_rate}")
        self.native_rate = native_rate
        self.target_rate = target_rate
        self.ratio = native_rate / target_rate
        self.frame_samples = frame_samples
        self._post = post
        self._phase = 0.0  # read position carried into the next block
        self._frame = np.empty(frame_samples, dtype=np.int16)
        self._fill = 0
        self.frames_posted = 0

    def process(self, block: Optional[np.ndarray]) -> bool:
        """Consume one quantum of native-rate float samples. Always returns True."""
        if block is None or len(block) == 0:
            return True

        n = len(block)
        count = max(0, math.ceil((n - self._phase) / self.ratio))
        if count:
            positions = self._phase + np.arange(count) * self.ratio
            picked = block[np.minimum(positions.astype(np.int64), n - 1)]
            self._write(float_to_pcm16(np.asarray(picked)))
        self._phase = self._phase + count * self.ratio - n
        return True

    def _write(self, pcm: np.ndarray) -> None:
        offset = 0
        while offset < len(pcm):
            take = min(self.frame_samples - self._fill, len(pcm) - offset)
            self._frame[self._fill:self._fill + take] = pcm[offset:offset + take]
            self._fill += take
            offset += take
            if self._fill == self.frame_samples:
                frame = self._frame
                # the posted buffer belongs to the consumer from here on
                self._frame = np.empty(self.frame_samples, dtype=np.int16)
                self._fill = 0
                self.frames_posted += 1
                self._post(frame.astype("<i2", copy=False).tobytes())

    def reset(self) -> None:
        self._phase = 0.0
        self._fill = 0
