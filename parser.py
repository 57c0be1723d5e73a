import logging
import os
import re
from typing import Dict

import h5py
import numpy as np

from events import EVENT_DTYPE, PARTICLE_DTYPE, Event

logger = logging.getLogger(__name__)


def write_events(filename, events):
    """
    Store events as two compound datasets:

        /events     EVENT_DTYPE     one row per event, 'first' and 'n_particles'
                                    point into /particles
        /particles  PARTICLE_DTYPE  all particles, event after event
    """
    events = list(events)
    records = np.zeros(len(events), dtype=EVENT_DTYPE)
    first = 0
    for irow, ev in enumerate(events):
        records[irow] = (ev.event_id, ev.vertex_z, ev.multiplicity, ev.mag_field,
                         first, len(ev))
        first += len(ev)

    parts = (np.concatenate([ev.particles for ev in events]) if events
             else np.zeros(0, dtype=PARTICLE_DTYPE))

    with h5py.File(filename, 'w') as f:
        f.create_dataset('events', data=records, compression='gzip', compression_opts=4)
        f.create_dataset('particles', data=parts.astype(PARTICLE_DTYPE),
                         compression='gzip', compression_opts=4)
    logger.debug("Wrote %d events, %d particles to %s", len(events), len(parts), filename)


def read_events(filename):
    """
    Yield Event objects in file order.

    Raises
    ------
    FileNotFoundError : the file does not exist
    KeyError          : the file does not have the /events and /particles datasets
    """
    if not os.path.isfile(filename):
        raise FileNotFoundError(f"Input file not found: {filename}")

    with h5py.File(filename, 'r') as f:
        missing = [key for key in ('events', 'particles') if key not in f]
        if missing:
            raise KeyError(f"{filename}: missing {missing}; available groups: {list(f.keys())}")
        records = f['events'][:]
        parts   = f['particles'][:]

    missing = [name for name in PARTICLE_DTYPE.names if name not in parts.dtype.names]
    if missing:
        raise KeyError(f"{filename}: particle columns {missing} missing; "
                       f"available: {list(parts.dtype.names)}")
    # the file may carry extra columns; keep the ones we know
    table = np.zeros(len(parts), dtype=PARTICLE_DTYPE)
    for name in PARTICLE_DTYPE.names:
        table[name] = parts[name]
    parts = table

    for rec in records:
        first = int(rec['first'])
        yield Event(event_id     = int(rec['event_id']),
                    vertex_z     = float(rec['vertex_z']),
                    multiplicity = float(rec['multiplicity']),
                    mag_field    = float(rec['mag_field']),
                    particles    = parts[first:first + int(rec['n_particles'])].copy())


class Parser:
    """
    Index input files named:
        femto_<runID>_<chunkID>.h5

    Produces a dictionary:
        file_id -> {runID, chunkID, h5_path}
    ordered by (run, chunk), so the events are read in arrival order.
    """

    FILE_PATTERN = re.compile(r"^femto_(\d+)_(\d+)\.h5$")

    def __init__(self, base_path: str):
        self.base_path = base_path
        self.files: Dict[int, Dict[str, object]] = {}
        self.scan()

    def scan(self):
        """
        Scan the base directory and build the file dictionary.
        """
        if not os.path.isdir(self.base_path):
            raise FileNotFoundError(f"Input directory not found: {self.base_path}")

        self.files.clear()
        found = []
        for entry in os.scandir(self.base_path):
            if not entry.is_file():
                continue
            match = self.FILE_PATTERN.match(entry.name)
            if not match:
                continue
            run_id, chunk_id = map(int, match.groups())
            found.append((run_id, chunk_id, entry.path))

        for file_id, (run_id, chunk_id, path) in enumerate(sorted(found)):
            self.files[file_id] = {
                "runID":   run_id,
                "chunkID": chunk_id,
                "h5_path": path,
            }

        if not self.files:
            raise FileNotFoundError(f"No femto_<run>_<chunk>.h5 files in: {self.base_path}")
        logger.info("Found %d input files in %s", len(self.files), self.base_path)

    def get_all_h5_paths(self):
        return [self.files[i]["h5_path"] for i in self.files]

    def events(self):
        """All events of all files, in (run, chunk) order."""
        for path in self.get_all_h5_paths():
            yield from read_events(path)


def input_paths(path):
    """A single file, or every indexed file of a directory."""
    if os.path.isdir(path):
        return Parser(path).get_all_h5_paths()
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Input not found: {path}")
    return [path]
