"""
Configuration constants for the folder compactor.
"""
from pathlib import Path

# --- Journal ---
DEFAULT_DATA_DIR = Path.home() / ".folder_compactor"
DEFAULT_DB_NAME = "journal.db"
DEFAULT_LOG_NAME = "compactor.log"

# --- External Tool ---
COMPACT_EXECUTABLE = "compact.exe"
COMPRESS_FLAG = "/C"
UNCOMPRESS_FLAG = "/U"

# --- Scanning ---
LARGE_FILE_THRESHOLD = 32 * 1024 * 1024  # 32 MB
MIN_SAVINGS_RATIO = 0.03  # 3%

DEFAULT_EXCLUDED_EXTENSIONS = {'.tmp', '.log', '.dmp'}

# Matched against single directory names, never full paths
DEFAULT_EXCLUDED_FOLDER_FRAGMENTS = [
    'shadercache',
    'shader cache',
    'cache',
    'temp',
    'crash',
    'crashes',
]

# --- Estimation ---
# Files up to this size are compressed whole. Larger ones are sampled (start/middle/end).
WHOLE_FILE_ESTIMATE_CAP = 2 * 1024 * 1024  # 2 MB
SAMPLE_BLOCK_COUNT = 3
SAMPLE_BLOCK_SIZE = 1 * 1024 * 1024  # 1 MB
MIN_SAMPLE_BLOCK_SIZE = 64 * 1024  # 64 KB
ESTIMATOR_LEVEL = 1  # zstd "fast" level

# --- Runner ---
HEARTBEAT_INTERVAL_SEC = 1.0
HEARTBEAT_JOIN_GRACE_SEC = 0.25
MAX_ERROR_LINES = 10

# --- Throughput History ---
THROUGHPUT_HISTORY_SIZE = 40
THROUGHPUT_MIN_SAME_ALGORITHM_SAMPLES = 3
THROUGHPUT_NOISE_FLOOR_BPS = 1 * 1024 * 1024  # below this a sample is measurement noise

MIB = 1024 * 1024
FALLBACK_THROUGHPUT_BPS = {
    'LZX': 15 * MIB,
    'NTFS': 30 * MIB,
}
DEFAULT_FALLBACK_THROUGHPUT_BPS = 25 * MIB

# --- File Categories (informational only) ---
EXECUTABLE_EXTS = {'.exe', '.dll'}
ARCHIVE_EXTS = {'.pak', '.bundle', '.zip', '.7z', '.rar'}
TEXTURE_EXTS = {'.dds', '.png', '.jpg', '.jpeg', '.tga'}
AUDIO_EXTS = {'.wav', '.ogg', '.mp3', '.flac'}
VIDEO_EXTS = {'.mp4', '.mkv', '.webm'}
CONFIG_EXTS = {'.ini', '.cfg', '.json', '.xml'}
SHADER_EXTS = {'.shader', '.hlsl', '.glsl', '.spv'}
SAVE_DATA_EXTS = {'.sav', '.save'}
CACHE_EXTS = {'.cache'}

# Extension to Category Mapping
EXT_TO_CATEGORY = {}
for ext in EXECUTABLE_EXTS: EXT_TO_CATEGORY[ext] = 'executable'
for ext in ARCHIVE_EXTS: EXT_TO_CATEGORY[ext] = 'archive'
for ext in TEXTURE_EXTS: EXT_TO_CATEGORY[ext] = 'texture'
for ext in AUDIO_EXTS: EXT_TO_CATEGORY[ext] = 'audio'
for ext in VIDEO_EXTS: EXT_TO_CATEGORY[ext] = 'video'
for ext in CONFIG_EXTS: EXT_TO_CATEGORY[ext] = 'config'
for ext in SHADER_EXTS: EXT_TO_CATEGORY[ext] = 'shader'
for ext in SAVE_DATA_EXTS: EXT_TO_CATEGORY[ext] = 'save_data'
for ext in CACHE_EXTS: EXT_TO_CATEGORY[ext] = 'cache'
