"""
Per-cloud fusion statistics as CSV rows.

One row per sampled cloud: the cloud id and stamp, every field of the
cloud's FusionResult, and the map size after fusion.
"""
import csv
from dataclasses import asdict
from enum import Enum
from pathlib import Path


class MappingProfiler:
    """Writes FusionResult rows to a CSV file, every sample_interval clouds"""

    def __init__(self, csv_path, sample_interval=10):
        """
        Args:
            csv_path: Path to CSV output file
            sample_interval: Record every N clouds
        """
        self.csv_path = Path(csv_path)
        self.sample_interval = max(int(sample_interval), 1)
        self.csv_file = None
        self.csv_writer = None

    def start(self):
        self.csv_file = open(self.csv_path, 'w', newline='')

    def record(self, cloud_id, stamp, result, map_surfels):
        """
        Append a row for a fused cloud if cloud_id is on the sampling grid

        Args:
            cloud_id: running count of fused clouds
            stamp: Stamp of the cloud
            result: FusionResult of the cloud
            map_surfels: valid surfels in the map after fusion
        """
        if self.csv_file is None or cloud_id % self.sample_interval != 0:
            return

        row = {'cloud_id': cloud_id, 'timestamp_sec': stamp.to_sec()}
        for name, value in asdict(result).items():
            row[name] = value.value if isinstance(value, Enum) else value
        row['map_surfels'] = map_surfels

        # Columns follow the first row written
        if self.csv_writer is None:
            self.csv_writer = csv.DictWriter(self.csv_file, fieldnames=list(row))
            self.csv_writer.writeheader()
        self.csv_writer.writerow(row)
        self.csv_file.flush()

    def close(self):
        if self.csv_file:
            self.csv_file.close()
            self.csv_file = None
            self.csv_writer = None
