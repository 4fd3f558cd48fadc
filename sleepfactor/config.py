"""
SleepFactor decay service configuration.
All settings via environment variables with sensible defaults.
"""

import os
from pathlib import Path

# --- Paths ---
BASE_DIR = Path(os.getenv("SLEEPFACTOR_DATA_DIR", "/data"))
DB_PATH = BASE_DIR / "sleepfactor.db"

# --- Auth ---
API_KEY = os.getenv("SLEEPFACTOR_API_KEY", "")

# --- User ---
# Single-user deployment; the id scopes every stored row.
USER_ID = os.getenv("SLEEPFACTOR_USER_ID", "local")

# --- Timezone ---
TIMEZONE = os.getenv("SLEEPFACTOR_TZ", "Europe/Zurich")

# --- Logging ---
LOG_LEVEL = os.getenv("SLEEPFACTOR_LOG_LEVEL", "INFO").upper()

# --- Reference instant (habitual bedtime) ---
DEFAULT_REFERENCE_TIME = os.getenv("SLEEPFACTOR_DEFAULT_REFERENCE_TIME", "22:00:00")
# Clock times before this hour belong to the night of the previous calendar day,
# e.g. a 00:30 bedtime for Monday resolves to Tuesday 00:30. 0 disables it.
REFERENCE_ROLLOVER_HOUR = int(os.getenv("SLEEPFACTOR_REFERENCE_ROLLOVER_HOUR", "12"))

# --- Decay profile defaults ---
DEFAULT_THRESHOLD_PERCENT: float = float(os.getenv("SLEEPFACTOR_DEFAULT_THRESHOLD_PERCENT", "5"))

# --- Lookback window ---
# max(LOOKBACK_MIN_DAYS, ceil(LOOKBACK_HALF_LIVES * t_half / 24))
# 3 half-lives leave 12.5% of a dose: fine for coarse sleep correlation, not dosing.
LOOKBACK_MIN_DAYS = 3
LOOKBACK_HALF_LIVES = 3.0

# --- Timeline / pattern ---
TIMELINE_INTERVAL_MINUTES = int(os.getenv("SLEEPFACTOR_TIMELINE_INTERVAL_MINUTES", "30"))
PATTERN_INTERVAL_MINUTES = 60
PATTERN_START_HOUR = 6
PATTERN_END_HOUR = 24

# --- Level indicator ---
# yellow up to this share of the typical dose, red above
LEVEL_MODERATE_RATIO = 0.3

# --- Drink presets (amount per serving, in the habit's unit) ---
# Caffeine in mg; alcohol in standard drinks.
DRINK_PRESETS = {
    "coffee": {"name": "Coffee (1 cup)", "amount": 95.0, "unit": "mg"},
    "espresso": {"name": "Espresso (1 shot)", "amount": 64.0, "unit": "mg"},
    "black_tea": {"name": "Black Tea (1 cup)", "amount": 47.0, "unit": "mg"},
    "green_tea": {"name": "Green Tea (1 cup)", "amount": 29.0, "unit": "mg"},
    "energy_drink": {"name": "Energy Drink (1 can)", "amount": 150.0, "unit": "mg"},  # 80-200 mg range
    "cola": {"name": "Cola (12oz)", "amount": 34.0, "unit": "mg"},
    "beer": {"name": "Beer (12oz)", "amount": 1.0, "unit": "drinks"},
    "wine": {"name": "Wine (5oz)", "amount": 1.0, "unit": "drinks"},
    "liquor": {"name": "Liquor (1.5oz)", "amount": 1.0, "unit": "drinks"},
    "none": {"name": "None Today", "amount": 0.0, "unit": ""},
}
