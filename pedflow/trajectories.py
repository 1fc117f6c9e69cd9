"""
Trajectory Output
Writers receiving one frame of agent states at the configured cadence
"""

import csv
from pathlib import Path
from typing import Dict, List, Optional, Tuple

Record = Tuple[int, float, float, float, float, int, int]
# Door passages of one pedestrian: (door uid, time)
Pathway = List[Tuple[int, float]]

COLUMNS = ['Frame', 'Time', 'ID', 'X', 'Y', 'VX', 'VY', 'Room', 'SubRoom']
PATHWAY_COLUMNS = ['ID', 'Step', 'Time', 'DoorUID', 'DoorID', 'Kind', 'Caption']


class TrajectoryWriter:
    """
    Base writer. Records are (id, x, y, vx, vy, room_id, subroom_id).
    Writers only ever receive complete frames.
    """

    def write_header(self, num_agents: int, fps: float, building=None):
        pass

    def write_frame(self, frame: int, time: float, records: List[Record]):
        raise NotImplementedError

    def write_pathways(self, pathways: Dict[int, Pathway], building=None):
        """Door passages of every pedestrian of the run, called once before the footer."""

    def write_footer(self):
        pass


class MemoryTrajectoryWriter(TrajectoryWriter):
    """Keeps every frame in memory, mostly for tests and notebooks."""

    def __init__(self):
        self.header: Optional[dict] = None
        self.frames: List[Tuple[int, float, List[Record]]] = []
        self.pathways: Dict[int, Pathway] = {}
        self.closed = False

    def write_header(self, num_agents: int, fps: float, building=None):
        self.header = {'agents': num_agents, 'fps': fps,
                       'building': building.caption if building is not None else None}

    def write_frame(self, frame: int, time: float, records: List[Record]):
        self.frames.append((frame, time, list(records)))

    def write_pathways(self, pathways: Dict[int, Pathway], building=None):
        self.pathways = {ped_id: list(path) for ped_id, path in pathways.items()}

    def write_footer(self):
        self.closed = True

    def trajectory(self, ped_id: int) -> List[Tuple[float, float, float]]:
        """(time, x, y) samples of one pedestrian."""
        return [(time, r[1], r[2]) for _, time, records in self.frames for r in records if r[0] == ped_id]


class CsvTrajectoryWriter(TrajectoryWriter):
    """
    Writes frames as CSV rows. Rows are buffered and written once
    `buffer_size` rows accumulated and at the footer.

    With a pathway_path, the door passages of every pedestrian go to a
    second CSV file, one row per passage.
    """

    def __init__(self, csv_path: str, buffer_size: int = 10000, pathway_path: Optional[str] = None):
        self.csv_path = csv_path
        self.pathway_path = pathway_path
        self.buffer_size = buffer_size
        self._buffer: List[list] = []
        self._file = None
        self._writer = None

    def write_header(self, num_agents: int, fps: float, building=None):
        Path(self.csv_path).parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.csv_path, 'w', newline='')
        caption = building.caption if building is not None else ''
        self._file.write(f"# pedflow trajectories: agents={num_agents} fps={fps} geometry={caption}\n")
        self._writer = csv.writer(self._file)
        self._writer.writerow(COLUMNS)
        self._file.flush()

    def write_frame(self, frame: int, time: float, records: List[Record]):
        for ped_id, x, y, vx, vy, room_id, subroom_id in records:
            self._buffer.append([frame, f"{time:.2f}", ped_id, f"{x:.4f}", f"{y:.4f}",
                                 f"{vx:.4f}", f"{vy:.4f}", room_id, subroom_id])
        if len(self._buffer) >= self.buffer_size:
            self.flush()

    def flush(self):
        if self._writer is None or not self._buffer:
            return
        self._writer.writerows(self._buffer)
        self._buffer.clear()
        self._file.flush()

    def write_pathways(self, pathways: Dict[int, Pathway], building=None):
        if self.pathway_path is None:
            return
        Path(self.pathway_path).parent.mkdir(parents=True, exist_ok=True)
        with open(self.pathway_path, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(PATHWAY_COLUMNS)
            for ped_id in sorted(pathways):
                for step, (uid, time) in enumerate(pathways[ped_id]):
                    door = building.get_connector_by_uid(uid) if building is not None else None
                    if door is None:
                        writer.writerow([ped_id, step, f"{time:.2f}", uid, '', '', ''])
                    else:
                        writer.writerow([ped_id, step, f"{time:.2f}", uid, door.id, door.kind, door.caption])

    def write_footer(self):
        self.flush()
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None
