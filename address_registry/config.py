import json
import os
from pathlib import Path
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()

CONFIG_PATH = Path(__file__).parent.parent / "config" / "settings.json"


@dataclass
class MatchingSettings:
    """Settings for request-path address resolution."""
    proximity_threshold_meters: float = 10.0
    geocoder_region: str = "uk"
    geocoder_timeout: float = 10.0


@dataclass
class OptimizationSettings:
    """Settings for the duplicate-cluster optimization pass."""
    cluster_distance_meters: float = 50.0
    similarity_threshold: float = 0.85
    geohash_precision: int = 9


@dataclass
class SummarySettings:
    """Settings for LLM summaries of contributed descriptions."""
    llm_provider: str = "openai"       # "openai" or "anthropic"
    llm_model: str = "gpt-4o-mini"
    freshness_hours: int = 24


@dataclass
class Settings:
    google_maps_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    store_path: str = ""
    matching: MatchingSettings = field(default_factory=MatchingSettings)
    optimization: OptimizationSettings = field(default_factory=OptimizationSettings)
    summary: SummarySettings = field(default_factory=SummarySettings)

    def __post_init__(self):
        self.google_maps_api_key = os.getenv("GOOGLE_MAPS_API_KEY", "")
        self.openai_api_key = os.getenv("OPENAI_API_KEY", "")
        self.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY", "")

        config = {}
        if CONFIG_PATH.exists():
            with open(CONFIG_PATH) as f:
                config = json.load(f)

        self.store_path = os.getenv(
            "ADDRESS_STORE_PATH", config.get("store_path", "data/addresses.json")
        )

        # Load matching settings
        matching_config = config.get("matching", {})
        self.matching = MatchingSettings(
            proximity_threshold_meters=matching_config.get("proximity_threshold_meters", 10.0),
            geocoder_region=matching_config.get("geocoder_region", "uk"),
            geocoder_timeout=matching_config.get("geocoder_timeout", 10.0),
        )

        # Load optimization settings
        optimization_config = config.get("optimization", {})
        self.optimization = OptimizationSettings(
            cluster_distance_meters=optimization_config.get("cluster_distance_meters", 50.0),
            similarity_threshold=optimization_config.get("similarity_threshold", 0.85),
            geohash_precision=optimization_config.get("geohash_precision", 9),
        )

        # Load summary settings
        summary_config = config.get("summary", {})
        self.summary = SummarySettings(
            llm_provider=summary_config.get("llm_provider", "openai"),
            llm_model=summary_config.get("llm_model", "gpt-4o-mini"),
            freshness_hours=summary_config.get("freshness_hours", 24),
        )


settings = Settings()
