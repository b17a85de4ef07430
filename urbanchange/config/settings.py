"""
Configuration management for the urban change analysis.
"""

import os
import json
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, field
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _default_threshold_configs() -> List[Dict[str, Any]]:
    return [
        {
            "name": "original",
            "rules": [
                {"index": "NDBI", "comparator": ">", "value": 0.0},
                {"index": "NDVI", "comparator": "<", "value": 0.3},
            ],
        },
        {
            "name": "lenient",
            "rules": [
                {"index": "NDBI", "comparator": ">", "value": -0.1},
                {"index": "NDVI", "comparator": "<", "value": 0.4},
            ],
        },
        {
            "name": "strict",
            "rules": [
                {"index": "NDBI", "comparator": ">", "value": 0.1},
                {"index": "NDVI", "comparator": "<", "value": 0.2},
            ],
        },
        {
            "name": "ebbi",
            "rules": [{"index": "EBBI", "comparator": ">", "value": 0.0}],
        },
    ]


@dataclass
class AnalysisConfig:
    """What to analyse: region, time sweep, cloud filter and thresholds."""
    region: str = "Montréal"
    boundaries_path: str = "data/boundaries/gaul_level2.gpkg"
    region_name_field: str = "ADM2_NAME"

    year_range: List[int] = field(default_factory=lambda: [2019, 2024])
    month_window: List[int] = field(default_factory=lambda: [5, 10])
    cloud_ceiling: float = 8.0

    # Each entry: {"name": str, "rules": [{"index", "comparator", "value"}]}
    threshold_configs: List[Dict[str, Any]] = field(default_factory=_default_threshold_configs)

    # Explicit [earlier, later] pairs; empty means consecutive years plus first/last
    change_pairs: List[List[int]] = field(default_factory=list)

    bands: List[str] = field(default_factory=lambda: ["B8", "B11", "B4", "B3", "B2", "B12"])
    resolution: float = 10.0
    target_crs: Optional[str] = None  # None -> UTM zone of the region
    max_pixels: int = int(1e13)

    @property
    def years(self) -> List[int]:
        start, end = self.year_range
        return list(range(int(start), int(end) + 1))


@dataclass
class CatalogConfig:
    """Imagery catalog (STAC) settings."""
    stac_url: str = "https://earth-search.aws.element84.com/v1"
    collection: str = "sentinel-2-l2a"
    cloud_cover_property: str = "eo:cloud_cover"
    max_items: int = 500
    request_timeout: int = 60

    # Catalog band name -> STAC asset key
    asset_map: Dict[str, str] = field(default_factory=lambda: {
        "B2": "blue",
        "B3": "green",
        "B4": "red",
        "B8": "nir",
        "B11": "swir16",
        "B12": "swir22",
    })

    # Optional directory of pre-staged GeoTIFF scenes (used instead of STAC)
    scenes_directory: str = ""


@dataclass
class ProcessingConfig:
    """Execution settings for the batch driver."""
    max_workers: int = 4
    timeout_minutes: int = 60
    tile_size: int = 512

    # Parent of the per-run directory that holds composite GeoTIFFs (system temp if empty)
    scratch_directory: str = ""


@dataclass
class OutputConfig:
    """Where results, charts and map layers go."""
    output_directory: str = "data/results"
    write_charts: bool = True
    write_layers: bool = False
    table_filename: str = "urban_areas.csv"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_directory: str = "logs"
    max_log_size_mb: int = 100
    backup_count: int = 5

    # Log to console
    console_logging: bool = True
    file_logging: bool = False

    # Log format
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class SystemConfig:
    """Complete system configuration."""
    analysis: AnalysisConfig
    catalog: CatalogConfig
    processing: ProcessingConfig
    output: OutputConfig
    logging: LoggingConfig

    # Environment settings
    environment: str = "development"  # development, staging, production
    debug: bool = False


class ConfigManager:
    """Manages application configuration from various sources."""

    def __init__(self, config_file: str = None, env_file: str = ".env"):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to JSON configuration file
            env_file: Path to environment variables file
        """
        self.config_file = config_file
        self.env_file = env_file
        self._config = None

        # Load environment variables
        if os.path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Loaded environment variables from {env_file}")

        self._load_config()

    def _load_config(self):
        """Load configuration from all sources."""
        # Start with default configuration
        config_dict = self._get_default_config()

        # Override with file configuration if exists
        if self.config_file:
            if not os.path.exists(self.config_file):
                raise FileNotFoundError(f"Configuration file not found: {self.config_file}")
            file_config = self._load_from_file(self.config_file)
            config_dict = self._merge_configs(config_dict, file_config)
            logger.info(f"Loaded configuration from {self.config_file}")

        # Override with environment variables
        env_config = self._load_from_environment()
        config_dict = self._merge_configs(config_dict, env_config)

        # Create config object
        self._config = SystemConfig(
            analysis=AnalysisConfig(**config_dict.get('analysis', {})),
            catalog=CatalogConfig(**config_dict.get('catalog', {})),
            processing=ProcessingConfig(**config_dict.get('processing', {})),
            output=OutputConfig(**config_dict.get('output', {})),
            logging=LoggingConfig(**config_dict.get('logging', {})),
            environment=config_dict.get('environment', 'development'),
            debug=config_dict.get('debug', False),
        )

        logger.debug(f"Configuration loaded for environment: {self._config.environment}")

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values."""
        return {
            'analysis': asdict(AnalysisConfig()),
            'catalog': asdict(CatalogConfig()),
            'processing': asdict(ProcessingConfig()),
            'output': asdict(OutputConfig()),
            'logging': asdict(LoggingConfig()),
            'environment': 'development',
            'debug': False,
        }

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from JSON file."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse config file {file_path}: {e}")
            raise

    def _load_from_environment(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config = {}

        # Analysis configuration
        analysis_env = {}
        if 'URBAN_REGION' in os.environ:
            analysis_env['region'] = os.environ['URBAN_REGION']
        if 'URBAN_BOUNDARIES' in os.environ:
            analysis_env['boundaries_path'] = os.environ['URBAN_BOUNDARIES']
        if 'URBAN_YEAR_START' in os.environ or 'URBAN_YEAR_END' in os.environ:
            defaults = AnalysisConfig().year_range
            analysis_env['year_range'] = [
                int(os.environ.get('URBAN_YEAR_START', defaults[0])),
                int(os.environ.get('URBAN_YEAR_END', defaults[1])),
            ]
        if 'URBAN_MONTH_START' in os.environ or 'URBAN_MONTH_END' in os.environ:
            defaults = AnalysisConfig().month_window
            analysis_env['month_window'] = [
                int(os.environ.get('URBAN_MONTH_START', defaults[0])),
                int(os.environ.get('URBAN_MONTH_END', defaults[1])),
            ]
        if 'URBAN_CLOUD_CEILING' in os.environ:
            analysis_env['cloud_ceiling'] = float(os.environ['URBAN_CLOUD_CEILING'])
        if 'URBAN_MAX_PIXELS' in os.environ:
            analysis_env['max_pixels'] = int(float(os.environ['URBAN_MAX_PIXELS']))
        if 'URBAN_RESOLUTION' in os.environ:
            analysis_env['resolution'] = float(os.environ['URBAN_RESOLUTION'])
        if 'URBAN_TARGET_CRS' in os.environ:
            analysis_env['target_crs'] = os.environ['URBAN_TARGET_CRS'] or None

        if analysis_env:
            env_config['analysis'] = analysis_env

        # Catalog configuration
        catalog_env = {}
        if 'STAC_URL' in os.environ:
            catalog_env['stac_url'] = os.environ['STAC_URL']
        if 'STAC_COLLECTION' in os.environ:
            catalog_env['collection'] = os.environ['STAC_COLLECTION']
        if 'SCENES_DIRECTORY' in os.environ:
            catalog_env['scenes_directory'] = os.environ['SCENES_DIRECTORY']
        if catalog_env:
            env_config['catalog'] = catalog_env

        # Processing configuration
        processing_env = {}
        if 'MAX_WORKERS' in os.environ:
            processing_env['max_workers'] = int(os.environ['MAX_WORKERS'])
        if 'TIMEOUT_MINUTES' in os.environ:
            processing_env['timeout_minutes'] = int(os.environ['TIMEOUT_MINUTES'])
        if 'TILE_SIZE' in os.environ:
            processing_env['tile_size'] = int(os.environ['TILE_SIZE'])
        if 'SCRATCH_DIRECTORY' in os.environ:
            processing_env['scratch_directory'] = os.environ['SCRATCH_DIRECTORY']

        if processing_env:
            env_config['processing'] = processing_env

        # Output configuration
        if 'OUTPUT_DIRECTORY' in os.environ:
            env_config['output'] = {'output_directory': os.environ['OUTPUT_DIRECTORY']}

        # Logging configuration
        logging_env = {}
        if 'LOG_LEVEL' in os.environ:
            logging_env['level'] = os.environ['LOG_LEVEL'].upper()
        if 'LOG_DIRECTORY' in os.environ:
            logging_env['log_directory'] = os.environ['LOG_DIRECTORY']

        if logging_env:
            env_config['logging'] = logging_env

        # System configuration
        if 'ENVIRONMENT' in os.environ:
            env_config['environment'] = os.environ['ENVIRONMENT']
        if 'DEBUG' in os.environ:
            env_config['debug'] = os.environ['DEBUG'].lower() == 'true'

        return env_config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    @property
    def config(self) -> SystemConfig:
        """Get the current configuration."""
        return self._config

    def save_config(self, file_path: str):
        """Save current configuration to a file."""
        try:
            config_dict = {
                'analysis': asdict(self._config.analysis),
                'catalog': asdict(self._config.catalog),
                'processing': asdict(self._config.processing),
                'output': asdict(self._config.output),
                'logging': asdict(self._config.logging),
                'environment': self._config.environment,
                'debug': self._config.debug,
            }

            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logger.info(f"Configuration saved to {file_path}")

        except OSError as e:
            logger.error(f"Failed to save config to {file_path}: {e}")
            raise

    def validate_config(self) -> bool:
        """
        Validate the current configuration.

        Malformed threshold configurations raise InvalidThresholdConfig; the
        remaining checks log the problem and return False.
        """
        from ..processing.masks import parse_threshold_configs

        analysis = self._config.analysis

        # Threshold rules fail loudly, before any raster work
        parse_threshold_configs(analysis.threshold_configs)

        start, end = analysis.year_range
        if start > end:
            logger.error(f"Year range start {start} is after end {end}")
            return False

        m0, m1 = analysis.month_window
        if not (1 <= m0 <= 12 and 1 <= m1 <= 12):
            logger.error(f"Month window {analysis.month_window} must use months 1-12")
            return False

        if not 0 < analysis.cloud_ceiling <= 100:
            logger.error("Cloud ceiling must be within (0, 100]")
            return False

        if analysis.resolution <= 0:
            logger.error("Resolution must be positive")
            return False

        if analysis.max_pixels < 1:
            logger.error("Max pixels must be at least 1")
            return False

        for pair in analysis.change_pairs:
            if len(pair) != 2 or pair[0] >= pair[1]:
                logger.error(f"Change pair {pair} must be [earlier, later]")
                return False

        if self._config.processing.max_workers < 1:
            logger.error("Max workers must be at least 1")
            return False

        if self._config.processing.tile_size < 16:
            logger.error("Tile size must be at least 16 pixels")
            return False

        logger.info("Configuration validation passed")
        return True


def setup_logging(config: LoggingConfig = None) -> None:
    """Install console and (optionally) rotating file handlers on the root logger."""
    config = config or get_config().logging
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    formatter = logging.Formatter(config.format)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.console_logging:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if config.file_logging:
        os.makedirs(config.log_directory, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(config.log_directory, "urban_change.log"),
            maxBytes=config.max_log_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# Global configuration manager instance
config_manager = ConfigManager()


def get_config() -> SystemConfig:
    """Get the current system configuration."""
    return config_manager.config


def load_config(config_file: str = None, env_file: str = ".env") -> SystemConfig:
    """Load configuration from specified sources."""
    global config_manager
    config_manager = ConfigManager(config_file, env_file)
    return config_manager.config


def validate_config() -> bool:
    """Validate the current configuration."""
    return config_manager.validate_config()
