from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .errors import EcRegridError
from .grid import EQ_RAD
from .partition import DEFAULT_CHUNK_SIZE
from .pipeline import RunConfig, plan, run_chunk

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ecregrid",
        allow_abbrev=False,
        description=(
            "Generate regridding operators between a GCM grid, its elevation "
            "classes and a fine-scale ice grid. Without --runchunk, plans "
            "chunks and writes a Makefile that runs them."
        ),
    )
    p.add_argument("grid_o", help="Ocean grid name (e.g. g1qx1)")
    p.add_argument("grid_i", help="Fine-scale ice grid name (e.g. g1mx1m)")
    p.add_argument("grid_i2", help="Display grid name (e.g. g10mx10m)")
    p.add_argument("ice_file", help="File with the ice mask and elevation on the ice grid")
    p.add_argument("topo_file", help="Topography file with FOCEAN/FOCEANF on the ocean grid")
    p.add_argument("-m", "--fgice", dest="fgice_var", default="FGICE1m",
                   help="Ice mask variable (default: %(default)s)")
    p.add_argument("-e", "--elev", dest="elev_var", default="ZICETOP1m",
                   help="Ice elevation variable (default: %(default)s)")
    p.add_argument("-E", "--elev-classes", default="-100,3700,200",
                   help="Elevation classes as lowest,highest[,step] (default: %(default)s)")
    p.add_argument("-o", "--output", default="global_ec",
                   help="Output prefix (default: %(default)s)")
    p.add_argument("-r", "--raw", action="store_true",
                   help="Produce raw (unscaled) matrices")
    p.add_argument("-R", "--radius", type=float, default=EQ_RAD,
                   help="Radius of the earth [m] (default: %(default)s)")
    p.add_argument("-c", "--runchunk", default=None,
                   help="Run one chunk id,j0,i0,j1,i1 (written by the planner)")
    p.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                   help="Ice cells per chunk when planning (default: %(default)s)")
    p.add_argument("--combiner", default="combine_global_ec",
                   help="Program that merges chunk outputs (default: %(default)s)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return p


def _strip_runchunk(argv: List[str]) -> List[str]:
    out = []
    skip = False
    for arg in argv:
        if skip:
            skip = False
            continue
        if arg in ("-c", "--runchunk"):
            skip = True
            continue
        if arg.startswith("--runchunk=") or (arg.startswith("-c") and len(arg) > 2):
            continue
        out.append(arg)
    return out


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = RunConfig(
        grid_o=args.grid_o,
        grid_i=args.grid_i,
        grid_i2=args.grid_i2,
        ice_file=args.ice_file,
        topo_file=args.topo_file,
        fgice_var=args.fgice_var,
        elev_var=args.elev_var,
        elev_classes=args.elev_classes,
        output=args.output,
        scale=not args.raw,
        eq_rad=args.radius,
        chunk_size=args.chunk_size,
        chunk=args.runchunk,
        combiner=args.combiner,
    )
    logger.info("%s", cfg)

    try:
        if cfg.chunk is None:
            command = [sys.executable, "-m", "ecregrid"] + _strip_runchunk(argv)
            chunks = plan(cfg, command)
            logger.info("Planned %d chunks. Run with: make -f %s.mk", len(chunks), cfg.output)
        else:
            for path in run_chunk(cfg):
                logger.info("Done: %s", path)
    except EcRegridError as e:
        logger.error("%s", e)
        return 1
    return 0
