"""Fingerprint pipeline: audio → spectral peaks → melodic delta fingerprint."""

import functools
import hashlib
import logging
import math
import subprocess
from pathlib import Path

import numpy as np
import scipy.signal

from .config import (
    SAMPLE_RATE,
    WINDOW_MS,
    OVERLAP,
    MIN_PEAK_HZ,
    MAX_PEAK_HZ,
    FINE_STEP_HZ,
    COARSE_STEP_HZ,
    COARSE_FROM_HZ,
    MIN_RUN_FRAMES,
    DELTA_SCALE_HZ,
)

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Window/overlap settings that cannot produce a usable frame geometry."""


class SpectrumError(ValueError):
    """The spectral primitive rejected a frame."""


# ---------------------------------------------------------------------------
# Step 1: Audio decode
# ---------------------------------------------------------------------------

def decode_audio(path: str | Path) -> np.ndarray:
    """
    Decode any audio file to mono float32 PCM at SAMPLE_RATE using ffmpeg.
    Returns a 1D float32 array in [-1, 1].
    """
    cmd = [
        "ffmpeg",
        "-loglevel", "error",
        "-i", str(path),
        "-ac", "1",                        # mono
        "-ar", str(SAMPLE_RATE),           # resample
        "-f", "f32le",                     # raw float32 little-endian PCM
        "-",                               # stdout
    ]
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if result.returncode != 0:
        raise RuntimeError(f"ffmpeg failed on {path}: {result.stderr.decode()}")
    audio = np.frombuffer(result.stdout, dtype=np.float32)
    if len(audio) == 0:
        raise RuntimeError(f"ffmpeg produced no audio for {path}")
    return audio


# ---------------------------------------------------------------------------
# Step 2: Framing + power spectra
# ---------------------------------------------------------------------------

def nearest_power_of_two(n: float) -> int:
    """Round log2(n) to the nearest integer and exponentiate (may round down)."""
    return int(2 ** round(math.log2(n)))


def frame_geometry(sample_rate: int, window_ms: float = WINDOW_MS, overlap: float = OVERLAP) -> tuple[int, int]:
    """
    Derive (window_samples, hop_size) for one pipeline run.
    Raises ConfigurationError for settings that can't frame anything.
    """
    if sample_rate <= 0:
        raise ConfigurationError(f"sample rate must be positive, got {sample_rate}")
    if not 0.0 <= overlap < 1.0:
        raise ConfigurationError(f"overlap must be in [0, 1), got {overlap}")

    requested = math.floor(window_ms / 1000 * sample_rate)
    if requested < 1:
        raise ConfigurationError(f"window of {window_ms} ms is shorter than one sample at {sample_rate} Hz")

    window_samples = nearest_power_of_two(requested)
    if window_samples < 2:
        raise ConfigurationError(f"window of {window_ms} ms yields a {window_samples}-sample transform")

    hop = math.floor(window_samples * (1 - overlap))
    if hop < 1:
        raise ConfigurationError(
            f"overlap {overlap} leaves no hop for a {window_samples}-sample window"
        )
    return window_samples, hop


@functools.lru_cache(maxsize=8)
def _hann(size: int) -> np.ndarray:
    return scipy.signal.get_window("hann", size, fftbins=False)


def power_spectrum(frame: np.ndarray, size: int) -> np.ndarray:
    """
    Hann-windowed power spectrum of one frame.
    Returns size // 2 non-negative bins; raises SpectrumError on a malformed frame.
    """
    if size < 2 or size & (size - 1):
        raise SpectrumError(f"transform size must be a power of two, got {size}")
    frame = np.asarray(frame, dtype=np.float64)
    if frame.ndim != 1 or len(frame) != size:
        raise SpectrumError(f"expected a 1D frame of {size} samples, got shape {frame.shape}")
    if not np.isfinite(frame).all():
        raise SpectrumError("frame contains non-finite samples")

    spectrum = np.fft.rfft(frame * _hann(size), n=size)[: size // 2]
    return spectrum.real ** 2 + spectrum.imag ** 2


def spectrogram(
    samples: np.ndarray,
    sample_rate: int,
    window_ms: float = WINDOW_MS,
    overlap: float = OVERLAP,
) -> np.ndarray:
    """
    Slice samples into overlapping power-of-two frames and compute each power spectrum.
    Returns [T × window_samples/2]. If the spectral primitive rejects a frame,
    extraction stops there and the frames produced so far are returned.
    """
    window_samples, hop = frame_geometry(sample_rate, window_ms, overlap)
    samples = np.asarray(samples)

    spectra = []
    for start in range(0, len(samples) - window_samples + 1, hop):
        try:
            spectra.append(power_spectrum(samples[start:start + window_samples], window_samples))
        except SpectrumError as e:
            logger.warning("Spectral analysis stopped at frame %d (sample %d): %s", len(spectra), start, e)
            break

    if not spectra:
        return np.empty((0, window_samples // 2), dtype=np.float64)
    return np.stack(spectra)


# ---------------------------------------------------------------------------
# Step 3: One peak per frame inside the melodic band
# ---------------------------------------------------------------------------

def extract_peaks(spec: np.ndarray, sample_rate: int) -> np.ndarray:
    """
    Frequency (Hz) of the strongest bin in [MIN_PEAK_HZ, MAX_PEAK_HZ] for every frame.
    Ties keep the lowest bin.
    """
    spec = np.asarray(spec)
    if spec.ndim != 2 or spec.shape[0] == 0:
        return np.empty(0, dtype=np.float64)

    n_bins = spec.shape[1]
    resolution = sample_rate / (2 * n_bins)
    min_bin = math.floor(MIN_PEAK_HZ / resolution)
    max_bin = min(math.floor(MAX_PEAK_HZ / resolution), n_bins - 1)

    if min_bin > max_bin:
        bins = np.full(spec.shape[0], min_bin)
    else:
        # argmax returns the first maximum, i.e. the lowest bin on ties
        bins = min_bin + np.argmax(spec[:, min_bin:max_bin + 1], axis=1)
    return bins * resolution


# ---------------------------------------------------------------------------
# Step 4 & 5: Quantize + denoise
# ---------------------------------------------------------------------------

def _round_half_away(x: np.ndarray) -> np.ndarray:
    return np.sign(x) * np.floor(np.abs(x) + 0.5)


def quantize(freqs: np.ndarray) -> np.ndarray:
    """Round to FINE_STEP_HZ below COARSE_FROM_HZ and to COARSE_STEP_HZ from there up."""
    freqs = np.asarray(freqs, dtype=np.float64)
    step = np.where(freqs < COARSE_FROM_HZ, FINE_STEP_HZ, COARSE_STEP_HZ)
    return _round_half_away(freqs / step) * step


def denoise(freqs: np.ndarray) -> np.ndarray:
    """
    Collapse runs of equal values to one, dropping runs shorter than MIN_RUN_FRAMES.
    [5, 5, 5, 7, 7, 9] → [5, 7]
    """
    freqs = np.asarray(freqs)
    if freqs.size == 0:
        return freqs.copy()
    starts = np.concatenate(([0], np.flatnonzero(freqs[1:] != freqs[:-1]) + 1))
    lengths = np.diff(np.append(starts, freqs.size))
    return freqs[starts[lengths >= MIN_RUN_FRAMES]]


# ---------------------------------------------------------------------------
# Step 6: Differential fingerprint
# ---------------------------------------------------------------------------

def differentiate(freqs: np.ndarray) -> np.ndarray:
    """
    Successive note deltas divided by DELTA_SCALE_HZ, rounded to integers.
    A constant offset on every peak cancels out. Fewer than two notes → empty.
    """
    freqs = np.asarray(freqs, dtype=np.float64)
    if freqs.size < 2:
        return np.empty(0, dtype=np.int32)
    return _round_half_away(np.diff(freqs) / DELTA_SCALE_HZ).astype(np.int32)


# ---------------------------------------------------------------------------
# Convenience: full pipeline
# ---------------------------------------------------------------------------

def fingerprint_samples(
    samples: np.ndarray,
    sample_rate: int,
    window_ms: float = WINDOW_MS,
    overlap: float = OVERLAP,
) -> np.ndarray:
    """Full pipeline for an in-memory sample stream → int32 fingerprint."""
    spec = spectrogram(samples, sample_rate, window_ms, overlap)
    logger.debug("Generated %d frames", len(spec))

    peaks = extract_peaks(spec, sample_rate)
    logger.debug("Extracted %d peaks", len(peaks))

    notes = denoise(quantize(peaks))
    logger.debug("%d notes after quantize/denoise", len(notes))

    fp = differentiate(notes)
    logger.debug("Final fingerprint: %d values", len(fp))
    return fp


def extract(path: str | Path, window_ms: float = WINDOW_MS, overlap: float = OVERLAP) -> np.ndarray:
    """Full pipeline: file → fingerprint."""
    audio = decode_audio(path)
    logger.debug("Decoded %s: %.2f s at %d Hz", path, len(audio) / SAMPLE_RATE, SAMPLE_RATE)
    return fingerprint_samples(audio, SAMPLE_RATE, window_ms, overlap)


def file_hash(path: str | Path) -> str:
    """SHA256 of the first 1 MB of a file — fast enough for change detection."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        h.update(f.read(1024 * 1024))
    return h.hexdigest()
