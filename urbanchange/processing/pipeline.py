"""
Urban change batch driver.
Sweeps years x threshold configurations (built-up area) and year pairs x
configurations (built-up change) over one region and collects a result table.
"""

import os
import math
import time
import logging
import tempfile
import concurrent.futures
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, Union

from ..exceptions import (
    GridMismatch,
    InvalidThresholdConfig,
    NoImageryAvailable,
    ResourceExceeded,
)
from .change import CHANGE_CLASSES, classify_change_dict
from .compositing import Composite, Compositor, season_window
from .indices import compute_indices, required_bands
from .masks import ThresholdConfig, build_mask, parse_threshold_configs
from .raster import RasterGrid
from .region import Region
from .results import AREA, CHANGE, RecordStatus, ResultRecord, ResultTable
from .zonal import ZonalAggregator

logger = logging.getLogger(__name__)

# Configurations used by the individual analyses when present in the request
AREA_CONFIGURATIONS = ("original", "ebbi")
DIAGNOSTIC_CONFIGURATIONS = ("original", "lenient", "strict")
CHANGE_CONFIGURATIONS = ("original",)

# Expected area ordering for nested threshold sets, loosest first
THRESHOLD_ORDERING = ("lenient", "original", "strict")

_FATAL_ERRORS = (GridMismatch, InvalidThresholdConfig)


def default_change_pairs(years: Sequence[int]) -> List[Tuple[int, int]]:
    """Consecutive year pairs plus (first, last)."""
    years = sorted(set(int(y) for y in years))
    pairs = list(zip(years[:-1], years[1:]))
    if len(years) > 2:
        pairs.append((years[0], years[-1]))
    return pairs


def _completed(future_to_key: Dict[concurrent.futures.Future, Hashable], timeout: float
               ) -> Iterator[Tuple[Hashable, Optional[concurrent.futures.Future]]]:
    """
    Yield (key, future) for every submitted future, finished ones first.

    Futures still running after `timeout` seconds are cancelled where
    possible and yielded with future None.
    """
    pending = set(future_to_key)
    try:
        for future in concurrent.futures.as_completed(future_to_key, timeout=timeout):
            pending.discard(future)
            yield future_to_key[future], future
    except concurrent.futures.TimeoutError:
        finished = [f for f in pending if f.done() and not f.cancelled()]
        for future in finished:
            pending.discard(future)
            yield future_to_key[future], future
        for future in pending:
            future.cancel()
            yield future_to_key[future], None


@dataclass
class AnalysisRequest:
    """Everything one analysis run needs, independent of where it came from."""
    region_name: str
    years: List[int]
    configurations: List[ThresholdConfig]
    month_window: Tuple[int, int] = (5, 10)
    cloud_ceiling: float = 8.0
    change_pairs: List[Tuple[int, int]] = field(default_factory=list)
    bands: List[str] = field(default_factory=lambda: ["B8", "B11", "B4", "B3", "B2", "B12"])
    resolution: float = 10.0
    target_crs: Optional[str] = None
    max_pixels: int = int(1e13)

    # Execution
    max_workers: int = 4
    timeout_minutes: int = 60
    tile_size: int = 512
    scratch_directory: Optional[str] = None

    def __post_init__(self):
        self.configurations = parse_threshold_configs(self.configurations)
        self.years = sorted(int(y) for y in self.years)
        if not self.years:
            raise ValueError("At least one year is required")
        self.change_pairs = [(int(a), int(b)) for a, b in self.change_pairs] or default_change_pairs(self.years)
        for earlier, later in self.change_pairs:
            if earlier >= later:
                raise ValueError(f"Change pair ({earlier}, {later}) is not in chronological order")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "AnalysisRequest":
        """
        Build a request from a SystemConfig, applying keyword overrides.

        Threshold configurations are validated first, so a malformed one
        raises InvalidThresholdConfig before any other work.
        """
        analysis = settings.analysis
        processing = settings.processing
        configurations = parse_threshold_configs(
            overrides.pop("configurations", None) or analysis.threshold_configs
        )
        values = dict(
            region_name=analysis.region,
            years=analysis.years,
            configurations=configurations,
            month_window=tuple(analysis.month_window),
            cloud_ceiling=analysis.cloud_ceiling,
            change_pairs=[tuple(p) for p in analysis.change_pairs],
            bands=list(analysis.bands),
            resolution=analysis.resolution,
            target_crs=analysis.target_crs,
            max_pixels=analysis.max_pixels,
            max_workers=processing.max_workers,
            timeout_minutes=processing.timeout_minutes,
            tile_size=processing.tile_size,
            scratch_directory=processing.scratch_directory or None,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def configuration_names(self) -> List[str]:
        return [c.name for c in self.configurations]

    def select(self, names: Sequence[str]) -> List[ThresholdConfig]:
        """Configurations whose names are in `names`; all of them if none match."""
        chosen = [c for c in self.configurations if c.name in names]
        return chosen or list(self.configurations)

    @property
    def composite_bands(self) -> List[str]:
        bands = list(self.bands)
        for band in required_bands(i for c in self.configurations for i in c.indices):
            if band not in bands:
                bands.append(band)
        return bands


class UrbanChangeProcessor:
    """
    Runs the composite -> index -> mask -> (change) -> area chain for one region.

    Composites are built once per year and shared read-only between tasks.
    Each task returns its own record; failures become records instead of
    aborting the run, except grid mismatches and invalid thresholds.

    Composites are written tile by tile to GeoTIFFs in a scratch directory
    owned by the processor (under `request.scratch_directory` when set) and
    read back window by window. Use the processor as a context manager, or
    call close(), to delete them:

        with UrbanChangeProcessor(request, catalog, region) as processor:
            table = processor.run()
    """

    def __init__(self, request: AnalysisRequest, catalog, region: Region, grid: RasterGrid = None):
        """
        Initialize the processor.

        Args:
            request: analysis parameters
            catalog: ImageCatalog providing scenes on the analysis grid
            region: region of interest in any CRS
            grid: analysis grid; derived from the region bounds when None
        """
        self.request = request
        self.catalog = catalog
        self.source_region = region

        if grid is not None:
            crs = grid.crs
        else:
            crs = request.target_crs or region.estimate_utm_crs()
        self.region = region.to_crs(crs)
        self.grid = grid or RasterGrid.from_bounds(self.region.bounds, request.resolution, crs)

        if request.scratch_directory:
            os.makedirs(request.scratch_directory, exist_ok=True)
        self._scratch = tempfile.TemporaryDirectory(prefix="urbanchange_", dir=request.scratch_directory)
        self.compositor = Compositor(request.tile_size, self._scratch.name)
        self.aggregator = ZonalAggregator(request.max_pixels, request.tile_size)
        self._composites: Dict[int, Union[Composite, Exception]] = {}

        logger.info(
            f"Processor for '{region.name}': grid {self.grid.width}x{self.grid.height} "
            f"at {self.grid.resolution} in {self.grid.crs}"
        )

    def __enter__(self) -> "UrbanChangeProcessor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Forget the composites and delete their scratch files."""
        self._composites.clear()
        if self._scratch is not None:
            self._scratch.cleanup()
            logger.debug(f"Removed scratch directory {self._scratch.name}")
            self._scratch = None

    @property
    def closed(self) -> bool:
        return self._scratch is None

    def _deadline(self) -> float:
        return time.monotonic() + self.request.timeout_minutes * 60

    def _wait_timeout(self, n_futures: int) -> float:
        """Seconds to wait for `n_futures` pool futures: one task timeout per wave of workers."""
        waves = max(1, math.ceil(n_futures / self.request.max_workers))
        return self.request.timeout_minutes * 60 * waves

    def build_composite(self, year: int) -> Composite:
        """
        Median composite of one year's season window.

        The timeout covers the catalog query as well as compositing.

        Raises:
            ResourceExceeded: the query and compositing took longer than the task timeout
        """
        if self.closed:
            raise RuntimeError("Processor is closed")
        deadline = self._deadline()
        start, end = season_window(year, *self.request.month_window)
        scenes = self.catalog.query(
            self.source_region, self.grid, start, end,
            self.request.cloud_ceiling, self.request.composite_bands,
        )
        if time.monotonic() > deadline:
            raise ResourceExceeded(
                f"Catalog query for {year} took longer than {self.request.timeout_minutes} min"
            )
        return self.compositor.composite(
            scenes, self.grid, start, end, self.request.cloud_ceiling,
            self.request.composite_bands, name=f"composite_{year}", deadline=deadline,
        )

    def build_composites(self, years: Sequence[int]) -> Dict[int, Union[Composite, Exception]]:
        """
        Build composites for `years` in parallel.

        A year whose composite fails, or does not finish within the task
        timeout, maps to the exception instead; the tasks for that year turn
        it into records.
        """
        pending = [y for y in sorted(set(years)) if y not in self._composites]
        if not pending:
            return {y: self._composites[y] for y in years}

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.request.max_workers)
        try:
            future_to_year = {executor.submit(self.build_composite, year): year for year in pending}
            for year, future in _completed(future_to_year, self._wait_timeout(len(pending))):
                if future is None:
                    logger.error(f"Composite for {year} timed out")
                    self._composites[year] = ResourceExceeded(
                        f"Composite for {year} did not finish within {self.request.timeout_minutes} min"
                    )
                    continue
                try:
                    composite = future.result()
                    logger.info(f"Composite {year}: {composite.image_count} image(s)")
                    self._composites[year] = composite
                except _FATAL_ERRORS:
                    raise
                except Exception as e:
                    logger.error(f"Composite for {year} failed: {e}")
                    self._composites[year] = e
        finally:
            # Timed-out workers are left to finish in the background
            executor.shutdown(wait=False, cancel_futures=True)
        return {y: self._composites[y] for y in years}

    def composite_for(self, year: int) -> Optional[Composite]:
        """The composite built for `year`, or None if it was not built or failed."""
        composite = self._composites.get(year)
        return composite if isinstance(composite, Composite) else None

    def _composite(self, year: int) -> Composite:
        composite = self._composites[year]
        if isinstance(composite, Exception):
            raise composite
        if composite.is_empty:
            raise NoImageryAvailable(year)
        return composite

    def _mask_reader(self, composite: Composite, config: ThresholdConfig):
        bands = required_bands(config.indices)

        def read(window):
            values = composite.raster.read(bands, window)
            return build_mask(compute_indices(config.indices, values), config)

        return read

    def area_task(self, year: int, config: ThresholdConfig) -> ResultRecord:
        """Built-up area (km²) of one year under one configuration."""
        composite = self._composite(year)
        read_mask = self._mask_reader(composite, config)
        totals = self.aggregator.aggregate_tiles(
            self.grid, self.region, lambda w: {"urban": read_mask(w)}, ["urban"], self._deadline()
        )
        return ResultRecord(
            AREA, year, config.name, {"urban_area_km2": totals["urban"]},
            image_count=composite.image_count,
        )

    def change_task(self, earlier: int, later: int, config: ThresholdConfig) -> ResultRecord:
        """Loss, gain and stable built-up area (km²) between two years."""
        first = self._composite(earlier)
        second = self._composite(later)
        read_first = self._mask_reader(first, config)
        read_second = self._mask_reader(second, config)
        totals = self.aggregator.aggregate_tiles(
            self.grid,
            self.region,
            lambda w: classify_change_dict(read_first(w), read_second(w)),
            CHANGE_CLASSES,
            self._deadline(),
        )
        return ResultRecord(
            CHANGE, later, config.name,
            {f"{name}_km2": totals[name] for name in CHANGE_CLASSES},
            image_count=second.image_count,
            baseline_year=earlier,
            baseline_image_count=first.image_count,
        )

    def _image_count(self, year: int) -> Optional[int]:
        composite = self._composites.get(year)
        return composite.image_count if isinstance(composite, Composite) else None

    def _run_task(self, kind: str, year: int, config: ThresholdConfig, baseline_year: int = None) -> ResultRecord:
        start_time = time.time()
        label = f"{baseline_year}->{year}" if baseline_year is not None else str(year)
        extra = {}
        if baseline_year is not None:
            extra = {"baseline_year": baseline_year, "baseline_image_count": self._image_count(baseline_year)}
        try:
            if kind == AREA:
                record = self.area_task(year, config)
            else:
                record = self.change_task(baseline_year, year, config)
            logger.info(f"[{kind}] {label} {config.name}: {dict(record.values)}")
            return record
        except _FATAL_ERRORS:
            raise
        except NoImageryAvailable as e:
            logger.warning(f"[{kind}] {label} {config.name}: {e}")
            status, message = RecordStatus.NO_DATA, str(e)
        except ResourceExceeded as e:
            logger.error(f"[{kind}] {label} {config.name}: {e}")
            status, message = RecordStatus.RESOURCE_EXCEEDED, str(e)
        except Exception as e:
            logger.error(f"[{kind}] {label} {config.name} failed: {e}")
            status, message = RecordStatus.FAILED, str(e)
        return ResultRecord.failed(
            kind, year, config.name, status, message,
            image_count=self._image_count(year),
            processing_time=time.time() - start_time,
            **extra,
        )

    def run(
        self,
        area_configurations: Sequence[ThresholdConfig] = None,
        change_configurations: Sequence[ThresholdConfig] = None,
        include_area: bool = True,
        include_change: bool = True,
    ) -> ResultTable:
        """
        Run the sweep and return the result table.

        Configuration lists default to every configuration of the request;
        an empty list runs no tasks of that kind.

        Raises:
            GridMismatch: a scene or mask is not on the analysis grid
            InvalidThresholdConfig: a configuration is malformed
        """
        area_configs, change_configs = [], []
        if include_area:
            area_configs = list(self.request.configurations if area_configurations is None else area_configurations)
        if include_change:
            change_configs = list(self.request.configurations if change_configurations is None else change_configurations)
        pairs = self.request.change_pairs if change_configs else []

        tasks = [(AREA, year, config, None) for year in self.request.years for config in area_configs]
        tasks += [(CHANGE, later, config, earlier) for earlier, later in pairs for config in change_configs]
        order = [c.name for c in self.request.configurations]

        try:
            self.aggregator.pixel_budget(self.grid, self.region)
        except ResourceExceeded as e:
            logger.error(str(e))
            records = [
                ResultRecord.failed(kind, year, config.name, RecordStatus.RESOURCE_EXCEEDED, str(e), baseline_year=base)
                for kind, year, config, base in tasks
            ]
            return ResultTable(records, order)

        years = set(y for kind, y, _, _ in tasks) | set(b for _, _, _, b in tasks if b is not None)
        self.build_composites(sorted(years))

        logger.info(f"Running {len(tasks)} task(s) with {self.request.max_workers} worker(s)")
        records = []
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.request.max_workers)
        try:
            future_to_task = {executor.submit(self._run_task, *task): task for task in tasks}
            for (kind, year, config, baseline_year), future in _completed(
                future_to_task, self._wait_timeout(len(tasks))
            ):
                if future is None:
                    logger.error(f"[{kind}] {year} {config.name} timed out")
                    records.append(ResultRecord.failed(
                        kind, year, config.name, RecordStatus.RESOURCE_EXCEEDED,
                        f"Did not finish within {self.request.timeout_minutes} min",
                        image_count=self._image_count(year), baseline_year=baseline_year,
                    ))
                    continue
                # _run_task turns everything but fatal errors into records
                records.append(future.result())
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        table = ResultTable(records, order)
        summary = table.summary()
        logger.info(f"Analysis complete: {summary['ok']}/{len(table)} record(s) ok, {summary}")
        return table


def threshold_ordering_violations(table: ResultTable, tolerance: float = 1e-9) -> List[str]:
    """Years where lenient >= original >= strict does not hold."""
    problems = []
    present = [name for name in THRESHOLD_ORDERING if name in table.configurations]
    for year in table.years:
        values = [(name, table.area(year, name)) for name in present]
        values = [(n, v) for n, v in values if v is not None]
        for (loose, a), (tight, b) in zip(values, values[1:]):
            if a + tolerance < b:
                problems.append(f"{year}: {loose} ({a:.4f}) < {tight} ({b:.4f})")
    return problems


class UrbanChangePipelineManager:
    """High-level manager for urban change analyses."""

    @staticmethod
    def create_request(settings=None, **overrides) -> AnalysisRequest:
        """
        Create an analysis request from configuration.

        Args:
            settings: SystemConfig (uses the global configuration if None)
            **overrides: AnalysisRequest fields to replace
        """
        if settings is None:
            from ..config.settings import get_config
            settings = get_config()
        return AnalysisRequest.from_settings(settings, **overrides)

    @staticmethod
    def resolve_region(name: str, lookup=None, settings=None) -> Region:
        """Look up a region by name; raises RegionNotFound."""
        if lookup is None:
            from ..config.settings import get_config
            from ..utils.region_lookup import RegionLookup
            settings = settings or get_config()
            lookup = RegionLookup(settings.analysis.boundaries_path, settings.analysis.region_name_field)
        return lookup.lookup(name)

    @staticmethod
    def create_catalog(settings=None, scenes_directory: str = None):
        from ..utils.catalog import create_catalog
        if settings is None:
            from ..config.settings import get_config
            settings = get_config()
        return create_catalog(settings.catalog, scenes_directory)

    @staticmethod
    def create_processor(request: AnalysisRequest, catalog=None, region=None, lookup=None, grid=None) -> UrbanChangeProcessor:
        """Resolve the region and catalog (when not given) and build a processor."""
        # Region first: an unknown name must fail before the catalog is touched
        if region is None:
            region = UrbanChangePipelineManager.resolve_region(request.region_name, lookup)
        if catalog is None:
            catalog = UrbanChangePipelineManager.create_catalog()
        return UrbanChangeProcessor(request, catalog, region, grid)

    @staticmethod
    def _run(request, catalog, region, lookup, grid, processor, **run_options) -> ResultTable:
        """Run on `processor`, or on a processor built and closed here when None."""
        if processor is not None:
            return processor.run(**run_options)
        with UrbanChangePipelineManager.create_processor(request, catalog, region, lookup, grid) as owned:
            return owned.run(**run_options)

    @staticmethod
    def run_area_analysis(request: AnalysisRequest = None, catalog=None, region=None, lookup=None, grid=None,
                          processor: UrbanChangeProcessor = None) -> ResultTable:
        """Built-up area per year for the NDBI/NDVI and EBBI configurations."""
        request = request or UrbanChangePipelineManager.create_request()
        return UrbanChangePipelineManager._run(
            request, catalog, region, lookup, grid, processor,
            area_configurations=request.select(AREA_CONFIGURATIONS), include_change=False,
        )

    @staticmethod
    def run_change_analysis(request: AnalysisRequest = None, catalog=None, region=None, lookup=None, grid=None,
                          processor: UrbanChangeProcessor = None) -> ResultTable:
        """Loss/gain/stable areas for each change pair."""
        request = request or UrbanChangePipelineManager.create_request()
        return UrbanChangePipelineManager._run(
            request, catalog, region, lookup, grid, processor,
            change_configurations=request.select(CHANGE_CONFIGURATIONS), include_area=False,
        )

    @staticmethod
    def run_threshold_diagnostics(request: AnalysisRequest = None, catalog=None, region=None, lookup=None, grid=None,
                          processor: UrbanChangeProcessor = None) -> ResultTable:
        """Area per year under each threshold variant, with image counts."""
        request = request or UrbanChangePipelineManager.create_request()
        table = UrbanChangePipelineManager._run(
            request, catalog, region, lookup, grid, processor,
            area_configurations=request.select(DIAGNOSTIC_CONFIGURATIONS), include_change=False,
        )
        for problem in threshold_ordering_violations(table):
            logger.warning(f"Threshold ordering violated: {problem}")
        return table

    @staticmethod
    def run_full_analysis(request: AnalysisRequest = None, catalog=None, region=None, lookup=None, grid=None,
                          processor: UrbanChangeProcessor = None) -> ResultTable:
        """Every configuration for every year and every change pair."""
        request = request or UrbanChangePipelineManager.create_request()
        return UrbanChangePipelineManager._run(request, catalog, region, lookup, grid, processor)
