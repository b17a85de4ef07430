import os
import time
from datetime import datetime

import geopandas as gpd
import numpy as np
import pytest

from conftest import VEGETATION, build_scene
from urbanchange.exceptions import GridMismatch, InvalidThresholdConfig, RegionNotFound, ResourceExceeded
from urbanchange.processing.pipeline import (
    AnalysisRequest,
    UrbanChangePipelineManager,
    UrbanChangeProcessor,
    default_change_pairs,
    threshold_ordering_violations,
)
from urbanchange.processing.raster import GeoTiffRaster
from urbanchange.processing.results import AREA, CHANGE, RecordStatus
from urbanchange.utils.catalog import InMemoryCatalog
from urbanchange.utils.region_lookup import RegionLookup

HALF_BUILT_KM2 = 15 * 30 * 100 / 1e6
REGION_KM2 = 30 * 30 * 100 / 1e6


class SlowCatalog(InMemoryCatalog):
    def __init__(self, scenes, delay):
        super().__init__(scenes)
        self.delay = delay

    def query(self, region, grid, start, end, cloud_ceiling, bands):
        time.sleep(self.delay)
        return super().query(region, grid, start, end, cloud_ceiling, bands)


class RecordingCatalog(InMemoryCatalog):
    def __init__(self, scenes):
        super().__init__(scenes)
        self.queries = []

    def query(self, region, grid, start, end, cloud_ceiling, bands):
        self.queries.append((start, end))
        return super().query(region, grid, start, end, cloud_ceiling, bands)


@pytest.fixture
def make_processor(grid, region):
    """Processors on the test grid, closed after the test."""
    created = []

    def factory(request, catalog, on_grid=grid):
        processor = UrbanChangeProcessor(request, catalog, region, on_grid)
        created.append(processor)
        return processor

    yield factory
    for processor in created:
        processor.close()


def _request(years=(2019, 2020), **kwargs):
    values = dict(
        region_name="Testville",
        years=list(years),
        configurations=["original", "lenient", "strict", "ebbi"],
        target_crs="EPSG:32618",
        max_workers=2,
        tile_size=16,
    )
    values.update(kwargs)
    return AnalysisRequest(**values)


def test_default_change_pairs():
    assert default_change_pairs([2019, 2020, 2021]) == [(2019, 2020), (2020, 2021), (2019, 2021)]
    assert default_change_pairs([2019, 2023]) == [(2019, 2023)]
    assert default_change_pairs([2019]) == []


def test_request_validates_thresholds_and_pairs():
    with pytest.raises(InvalidThresholdConfig):
        _request(configurations=[{"name": "bad", "rules": ["NDBI ~ 0"]}])
    with pytest.raises(ValueError):
        _request(change_pairs=[(2020, 2019)])
    assert _request(change_pairs=[[2019, 2020]]).change_pairs == [(2019, 2020)]


def test_composite_bands_cover_indices():
    request = _request(bands=["B4", "B3", "B2"])
    assert set(request.composite_bands) >= {"B4", "B3", "B2", "B8", "B11", "B12"}


def test_uniform_vegetation_gives_zero_area(grid, region, make_processor):
    catalog = InMemoryCatalog([build_scene(grid, datetime(2019, 7, 1), **VEGETATION)])
    processor = make_processor(_request(years=[2019]), catalog)
    table = processor.run(include_change=False)
    for config in ("original", "lenient", "strict", "ebbi"):
        record = table.get(AREA, 2019, config)
        assert record.status is RecordStatus.OK
        assert record.value("urban_area_km2") == 0.0
        assert record.image_count == 1


def test_area_and_change(grid, region, two_year_catalog, make_processor):
    processor = make_processor(_request(), two_year_catalog)
    table = processor.run()

    assert table.area(2019, "original") == pytest.approx(0.0)
    assert table.area(2020, "original") == pytest.approx(HALF_BUILT_KM2)
    assert table.get(AREA, 2019, "original").image_count == 2

    change = table.get(CHANGE, 2020, "original", baseline_year=2019)
    assert change.value("gain_km2") == pytest.approx(HALF_BUILT_KM2)
    assert change.value("loss_km2") == pytest.approx(0.0)
    assert change.value("stable_km2") == pytest.approx(0.0)
    assert change.baseline_image_count == 2


def test_change_reconciles_with_area(grid, region, two_year_catalog, make_processor):
    table = make_processor(_request(), two_year_catalog).run()
    for config in table.configurations:
        change = table.get(CHANGE, 2020, config, baseline_year=2019)
        assert change.value("stable_km2") + change.value("loss_km2") == pytest.approx(table.area(2019, config))
        assert change.value("stable_km2") + change.value("gain_km2") == pytest.approx(table.area(2020, config))


def test_empty_year_is_no_data_while_others_succeed(grid, region, two_year_catalog, make_processor):
    processor = make_processor(_request(years=[2019, 2020, 2021]), two_year_catalog)
    table = processor.run()

    missing = table.get(AREA, 2021, "original")
    assert missing.status is RecordStatus.NO_DATA
    assert missing.value("urban_area_km2") is None
    assert missing.image_count == 0
    assert table.get(AREA, 2020, "original").ok

    change = table.get(CHANGE, 2021, "original", baseline_year=2020)
    assert change.status is RecordStatus.NO_DATA
    assert change.value("gain_km2") is None


def test_threshold_ordering_holds(grid, region, make_processor):
    rng = np.random.default_rng(9)
    scenes = [
        build_scene(
            grid, datetime(2019, 7, d),
            B8=rng.uniform(500, 4000, grid.shape),
            B11=rng.uniform(500, 4000, grid.shape),
            B4=rng.uniform(500, 4000, grid.shape),
        )
        for d in (1, 2, 3)
    ]
    table = make_processor(_request(years=[2019]), InMemoryCatalog(scenes)).run(
        include_change=False
    )
    lenient, original, strict = (table.area(2019, c) for c in ("lenient", "original", "strict"))
    assert lenient >= original >= strict
    assert threshold_ordering_violations(table) == []


def test_pixel_ceiling_gives_resource_exceeded_records(grid, region, two_year_catalog, make_processor):
    processor = make_processor(_request(max_pixels=10), two_year_catalog)
    table = processor.run()
    assert len(table) > 0
    assert all(r.status is RecordStatus.RESOURCE_EXCEEDED for r in table)


def test_misaligned_catalog_scene_is_fatal(grid, region, make_processor):
    from rasterio.transform import from_origin
    from urbanchange.processing.raster import RasterGrid

    other = RasterGrid(from_origin(0, 0, 10, 10), grid.width, grid.height, grid.crs)

    class StrayCatalog(InMemoryCatalog):
        def query(self, region, grid, start, end, cloud_ceiling, bands):
            return list(self.scenes)

    catalog = StrayCatalog([build_scene(other, datetime(2019, 7, 1))])
    with pytest.raises(GridMismatch):
        make_processor(_request(years=[2019]), catalog).run()


def test_unknown_region_fails_before_catalog_query(region):
    lookup = RegionLookup.from_geodataframe(
        gpd.GeoDataFrame({"ADM2_NAME": ["Testville"]}, geometry=[region.geometry], crs=region.crs)
    )
    catalog = RecordingCatalog([])
    with pytest.raises(RegionNotFound):
        UrbanChangePipelineManager.run_area_analysis(
            _request(region_name="Atlantis"), catalog=catalog, lookup=lookup
        )
    assert catalog.queries == []


def test_manager_selects_configurations(grid, region, two_year_catalog):
    request = _request()
    area = UrbanChangePipelineManager.run_area_analysis(request, two_year_catalog, region, grid=grid)
    assert {r.configuration for r in area} == {"original", "ebbi"}
    assert not area.change_records()

    diagnostics = UrbanChangePipelineManager.run_threshold_diagnostics(request, two_year_catalog, region, grid=grid)
    assert {r.configuration for r in diagnostics} == {"original", "lenient", "strict"}

    change = UrbanChangePipelineManager.run_change_analysis(request, two_year_catalog, region, grid=grid)
    assert {r.configuration for r in change} == {"original"}
    assert not change.area_records()


def test_processor_derives_grid_from_region(region, two_year_catalog, make_processor):
    processor = make_processor(_request(resolution=10.0), two_year_catalog, on_grid=None)
    assert processor.grid.shape == (30, 30)
    assert processor.grid.crs == "EPSG:32618"


def test_slow_catalog_query_times_out(grid, region, make_processor):
    # 0.005 min = 0.3 s per task
    catalog = SlowCatalog([build_scene(grid, datetime(2019, 7, 1))], delay=2.0)
    processor = make_processor(_request(years=[2019], timeout_minutes=0.005), catalog)
    started = time.monotonic()
    table = processor.run(include_change=False)
    assert time.monotonic() - started < 1.5
    assert len(table) == 4
    for record in table:
        assert record.status is RecordStatus.RESOURCE_EXCEEDED
        assert record.value("urban_area_km2") is None


def test_query_time_counts_towards_composite_timeout(grid, region, make_processor):
    catalog = SlowCatalog([build_scene(grid, datetime(2019, 7, 1))], delay=0.5)
    processor = make_processor(_request(years=[2019], timeout_minutes=0.005), catalog)
    with pytest.raises(ResourceExceeded):
        processor.build_composite(2019)


def test_composites_live_in_scratch_files_removed_on_close(grid, region, two_year_catalog, tmp_path):
    scratch = tmp_path / "scratch"
    request = _request(scratch_directory=str(scratch))
    with UrbanChangeProcessor(request, two_year_catalog, region, grid) as processor:
        table = processor.run()
        assert isinstance(processor.composite_for(2019).raster, GeoTiffRaster)
        assert os.listdir(scratch)
    assert table.area(2020, "original") == pytest.approx(HALF_BUILT_KM2)
    assert processor.closed
    assert os.listdir(scratch) == []
    with pytest.raises(RuntimeError):
        processor.build_composite(2019)


def test_manager_closes_its_own_processor(grid, region, two_year_catalog, tmp_path):
    scratch = tmp_path / "scratch"
    UrbanChangePipelineManager.run_full_analysis(
        _request(scratch_directory=str(scratch)), two_year_catalog, region, grid=grid
    )
    assert os.listdir(scratch) == []


def test_empty_configuration_list_runs_nothing(two_year_catalog, make_processor):
    processor = make_processor(_request(), two_year_catalog)
    table = processor.run(area_configurations=[])
    assert not table.area_records()
    assert {r.configuration for r in table.change_records()} == {"original", "lenient", "strict", "ebbi"}
