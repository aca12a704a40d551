"""
Build an enriched map and a demand scenario from a network, external
datasets and population cells.

    python -m mapsynth.run_scenario config.json network.graphml out/ --cells cells.gpkg

The config file lists the sources to conflate (see PipelineConfig); records
in another CRS than the network are reprojected with pyproj.
"""

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from .config import PipelineConfig
from .conflation import make_transform, same_crs
from .logging_config import configure_logging
from .orchestrator import run_pipeline
from .setup.external_sources import load_records
from .setup.network_inputs import load_network
from .setup.population_inputs import load_cells, load_distributions

logger = logging.getLogger("mapsynth.run_scenario")


def run_scenario(
    config_path,
    network_path,
    output_dir,
    cells_path=None,
    distributions_path=None,
    seed=None,
    show_progress=True,
):
    config = PipelineConfig.from_json(config_path)
    if seed is not None:
        config = dataclasses.replace(config, seed=seed)

    logger.info("Running scenario: config %s, network %s, output %s", config_path, network_path, output_dir)
    elements, network_crs = load_network(network_path)
    network_crs = network_crs or config.crs

    sources = {}
    transforms = {}
    for name, src in config.sources.items():
        if src.path is None:
            raise ValueError(f"sources.{name}.path is required when running from a config file")
        records = load_records(
            src.path,
            src.kind,
            source=name,
            crs=src.crs,
            id_column=src.id_column,
            x_column=src.x_column,
            y_column=src.y_column,
            geometry_column=src.geometry_column,
            layer=src.layer,
        )
        sources[name] = records
        record_crs = next((r.crs for r in records if r.crs is not None), None)
        if network_crs is not None and not same_crs(record_crs, network_crs):
            transforms[name] = make_transform(record_crs, network_crs)

    cells = load_cells(cells_path, target_crs=network_crs) if cells_path else None
    distributions = load_distributions(distributions_path) if distributions_path else None

    return run_pipeline(
        config,
        elements,
        sources,
        cells=cells,
        distributions=distributions,
        output_dir=output_dir,
        transforms=transforms,
        network_crs=network_crs,
        show_progress=show_progress,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("config", help="Pipeline configuration JSON")
    parser.add_argument("network", help="Road network as GraphML or a geospatial file of lines")
    parser.add_argument("output_dir", help="Directory for artifacts, run report and run.log")
    parser.add_argument("--cells", default=None, help="Population cells (CSV or geospatial file)")
    parser.add_argument("--distributions", default=None, help="Survey distributions JSON")
    parser.add_argument("--seed", type=int, default=None, help="Override the configured seed")
    parser.add_argument("--log-level", default="INFO", help="Console log level")
    args = parser.parse_args()

    configure_logging(args.output_dir, console_level=getattr(logging, args.log_level.upper()))
    result = run_scenario(
        Path(args.config),
        Path(args.network),
        Path(args.output_dir),
        cells_path=args.cells,
        distributions_path=args.distributions,
        seed=args.seed,
    )
    sys.exit(0 if result.ok else 1)
