import logging
import os

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty libraries underneath geopandas and pyproj
QUIET_LOGGERS = ["pyogrio", "fiona", "pyproj", "shapely"]


def configure_logging(run_dir=None, console_level=logging.INFO, file_level=logging.DEBUG):
    """Route mapsynth.* loggers to the console and, given a run directory, to {run_dir}/run.log.

    The run log is appended to, so reruns into the same output directory
    keep their history. Calling this again replaces the handlers.
    """
    root = logging.getLogger("mapsynth")
    for handler in list(root.handlers):
        handler.close()
    root.handlers.clear()
    root.setLevel(min(console_level, file_level) if run_dir is not None else console_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if run_dir is not None:
        os.makedirs(run_dir, exist_ok=True)
        run_log = logging.FileHandler(os.path.join(run_dir, "run.log"), mode="a", encoding="utf-8")
        run_log.setLevel(file_level)
        run_log.setFormatter(formatter)
        root.addHandler(run_log)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, console_level))
    return root
