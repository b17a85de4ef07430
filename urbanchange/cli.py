"""
Command line interface for the urban change analysis.

Examples:
    urban-change area --region "Montréal" --years 2019 2024
    urban-change diagnostics --scenes-dir data/scenes --cloud-ceiling 10
    urban-change run --threshold "dense=NDBI>0.2,NDVI<0.1" --output-dir out
"""

import os
import sys
import json
import logging
import argparse
from dataclasses import asdict

from .config.settings import SystemConfig, load_config, setup_logging, validate_config
from .exceptions import UrbanChangeError
from .processing.masks import parse_cli_threshold
from .processing.pipeline import (
    AnalysisRequest,
    UrbanChangePipelineManager,
    threshold_ordering_violations,
)
from .reporting import export_analysis_layers, render_presets
from .utils.region_lookup import RegionLookup

logger = logging.getLogger(__name__)

ANALYSES = {
    "area": UrbanChangePipelineManager.run_area_analysis,
    "change": UrbanChangePipelineManager.run_change_analysis,
    "diagnostics": UrbanChangePipelineManager.run_threshold_diagnostics,
    "run": UrbanChangePipelineManager.run_full_analysis,
}


def to_analysis_config(args: argparse.Namespace, config: SystemConfig) -> SystemConfig:
    """Apply command line overrides to the loaded configuration (in place)."""
    analysis = config.analysis
    if args.region:
        analysis.region = args.region
    if args.boundaries:
        analysis.boundaries_path = args.boundaries
    if args.years:
        analysis.year_range = list(args.years)
    if args.months:
        analysis.month_window = list(args.months)
    if args.cloud_ceiling is not None:
        analysis.cloud_ceiling = args.cloud_ceiling
    if args.threshold:
        analysis.threshold_configs = [
            {
                "name": cfg.name,
                "rules": [
                    {"index": r.index, "comparator": r.comparator, "value": r.value}
                    for r in cfg.rules
                ],
            }
            for cfg in (parse_cli_threshold(t) for t in args.threshold)
        ]
    if args.max_pixels is not None:
        analysis.max_pixels = int(args.max_pixels)
    if args.resolution is not None:
        analysis.resolution = args.resolution
    if args.output_dir:
        config.output.output_directory = args.output_dir
    if args.scenes_dir:
        config.catalog.scenes_directory = args.scenes_dir
    if args.stac_url:
        config.catalog.stac_url = args.stac_url
    if args.workers is not None:
        config.processing.max_workers = args.workers
    if args.verbose:
        config.logging.level = "DEBUG"
    return config


def cmd_show_config(args: argparse.Namespace, config: SystemConfig) -> int:
    print(json.dumps(
        {
            "analysis": asdict(config.analysis),
            "catalog": asdict(config.catalog),
            "processing": asdict(config.processing),
            "output": asdict(config.output),
            "logging": asdict(config.logging),
            "environment": config.environment,
            "debug": config.debug,
        },
        indent=2,
        ensure_ascii=False,
    ))
    return 0


def cmd_analysis(args: argparse.Namespace, config: SystemConfig) -> int:
    request = AnalysisRequest.from_settings(config)

    # Region before catalog: an unknown name fails without touching the catalog
    lookup = RegionLookup(config.analysis.boundaries_path, config.analysis.region_name_field)
    region = lookup.lookup(request.region_name)
    catalog = UrbanChangePipelineManager.create_catalog(config)
    # Layers are exported from the composites, so the processor stays open until then
    with UrbanChangePipelineManager.create_processor(request, catalog, region) as processor:
        table = ANALYSES[args.cmd](request, processor=processor)

        print(table.to_text())
        problems = threshold_ordering_violations(table)
        if problems:
            print("\nThreshold ordering warnings:")
            for problem in problems:
                print(f"  {problem}")

        output_dir = config.output.output_directory
        os.makedirs(output_dir, exist_ok=True)
        table.to_csv(os.path.join(output_dir, f"{args.cmd}_{config.output.table_filename}"))
        if config.output.write_charts:
            render_presets(table, output_dir)
        if config.output.write_layers:
            export_analysis_layers(processor, os.path.join(output_dir, "layers"))

    summary = table.summary()
    logger.info(f"Finished '{args.cmd}': {summary}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="JSON configuration file")
    common.add_argument("--region", help="Region name (exact match on the boundaries name field)")
    common.add_argument("--boundaries", help="Administrative boundaries file (GeoPackage, shapefile, ...)")
    common.add_argument("--years", nargs=2, type=int, metavar=("START", "END"), help="Inclusive year range")
    common.add_argument("--months", nargs=2, type=int, metavar=("M0", "M1"), help="Inclusive month window")
    common.add_argument("--cloud-ceiling", type=float, dest="cloud_ceiling", help="Scene cloud cover must be below this (%%)")
    common.add_argument(
        "--threshold",
        action="append",
        help="Threshold configuration NAME=RULE[,RULE], e.g. original=NDBI>0,NDVI<0.3 (repeatable)",
    )
    common.add_argument("--max-pixels", type=float, dest="max_pixels", help="Pixel ceiling per region")
    common.add_argument("--resolution", type=float, help="Analysis resolution in CRS units")
    common.add_argument("--output-dir", dest="output_dir", help="Directory for tables, charts and layers")
    common.add_argument("--scenes-dir", dest="scenes_dir", help="Pre-staged scenes directory (instead of STAC)")
    common.add_argument("--stac-url", dest="stac_url", help="STAC API root")
    common.add_argument("--workers", type=int, help="Worker threads")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    p = argparse.ArgumentParser(prog="urban-change", description="Built-up area and change analysis")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_area = sub.add_parser("area", parents=[common], help="Built-up area per year (NDBI and EBBI)")
    p_area.set_defaults(func=cmd_analysis)

    p_change = sub.add_parser("change", parents=[common], help="Built-up loss/gain/stable between years")
    p_change.set_defaults(func=cmd_analysis)

    p_diag = sub.add_parser("diagnostics", parents=[common], help="Area under each threshold variant with image counts")
    p_diag.set_defaults(func=cmd_analysis)

    p_run = sub.add_parser("run", parents=[common], help="All configurations, years and change pairs")
    p_run.set_defaults(func=cmd_analysis)

    p_show = sub.add_parser("show-config", parents=[common], help="Print the effective configuration")
    p_show.set_defaults(func=cmd_show_config)

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        config = to_analysis_config(args, config)
        setup_logging(config.logging)
        if not validate_config():
            logger.error("Configuration validation failed")
            return 2
        return args.func(args, config)
    except (UrbanChangeError, FileNotFoundError) as e:
        logger.error(f"{args.cmd} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
