"""REFRAIN configuration and paths."""

import os
from pathlib import Path

# Data directory: ~/.refrain/
DATA_DIR = Path(os.environ.get("REFRAIN_DATA_DIR", Path.home() / ".refrain"))
DB_PATH = DATA_DIR / "library.db"

# Decoder output
SAMPLE_RATE = 44100

# Frame extraction
WINDOW_MS = 100.0
OVERLAP = 0.5

# Peak band: ignore bass rumble and high-frequency hiss
MIN_PEAK_HZ = 300.0
MAX_PEAK_HZ = 5000.0

# Adaptive quantization: coarser steps above COARSE_FROM_HZ
FINE_STEP_HZ = 10
COARSE_STEP_HZ = 20
COARSE_FROM_HZ = 2000.0

# A quantized peak must hold for this many consecutive frames to survive
MIN_RUN_FRAMES = 2

# Deltas are divided by this before rounding
DELTA_SCALE_HZ = 10

# Alignment scoring
GOOD_MATCH_DIFF = 2          # |a - b| at or below this is a good match
GOOD_MATCH_WEIGHT = 0.5      # good matches add diff * weight
STREAK_MIN = 5               # streak length that starts earning the bonus
STREAK_BONUS = 0.1           # subtracted per streak step, every step
COARSE_STEPS = 20            # coarse pass evaluates ~this many offsets per window length

# Pipeline version — increment when the extraction logic changes
PIPELINE_VERSION = 1

# Detection output
TOP_RESULTS = 5
INPUT_STEM = "input"         # `refrain detect` looks for ./input.<ext> when --input is absent

# Audio formats supported via ffmpeg
AUDIO_EXTENSIONS = {".mp3", ".wav", ".flac", ".ogg", ".m4a", ".aac", ".wma"}
