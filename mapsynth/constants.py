import json
from functools import lru_cache
from pathlib import Path

# Modes of transportation
MODES = [
    "CAR",
    "TRANSIT",
    "WALK",
    "BICYCLE",
    "RIDEHAIL",
]

# Trip purposes
PURPOSES = [
    "WORK",
    "SCHOOL",
    "SHOPPING",
    "LEISURE",
    "OTHER",
]

# Payload schema per external record kind: field name -> python type
RECORD_PAYLOAD_FIELDS = {
    "collision": {"severity": int},
    "parking": {"capacity": int},
    "amenity": {"category": str},
    "traffic_count": {"volume": float},
}

# Candidates whose distances differ by less than this are treated as tied
TIE_EPSILON = 1e-9

# Decimal places kept for computed coordinates, offsets and distances
COORD_PRECISION = 6

# How many example ids a run report keeps per failure list
MAX_EXAMPLES = 5

# Attempts at drawing a point inside a cell polygon before falling back
# to its representative point
MAX_POINT_SAMPLES = 32

# Path to default pipeline parameters JSON
PIPELINE_PARAMS_PATH = Path(__file__).parent / "pipeline_parameters.json"


@lru_cache()
def load_pipeline_params(path: str | Path = PIPELINE_PARAMS_PATH) -> dict:
    """Load pipeline parameters (matching, synthesis and output defaults)."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
