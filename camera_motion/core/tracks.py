"""
Multi-frame point tracks built by chaining inlier matches.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)


class Track:
    """
    Trajectory of one feature over a contiguous run of frames.

    Timestamps are strictly increasing and the covered frame indices have no
    gaps: a track is closed as soon as one consecutive match is missing.
    """

    def __init__(self, track_id, start_index):
        """
        Initialize an open track.

        Args:
            track_id: Identifier, unique within a tracker run
            start_index: Frame index of the first point
        """
        self.id = track_id
        self.start_index = start_index
        self.timestamps = []
        self.points = []
        self.closed = False

    def append(self, timestamp, point):
        if self.closed:
            raise ValueError(f"Track {self.id} is closed")
        if self.timestamps and timestamp <= self.timestamps[-1]:
            raise ValueError(f"Track {self.id}: timestamp {timestamp} is not after {self.timestamps[-1]}")
        self.timestamps.append(timestamp)
        self.points.append((float(point[0]), float(point[1])))

    def close(self):
        self.closed = True

    def __len__(self):
        return len(self.timestamps)

    @property
    def end_index(self):
        return self.start_index + len(self.timestamps) - 1

    @property
    def first_timestamp(self):
        return self.timestamps[0]

    @property
    def last_timestamp(self):
        return self.timestamps[-1]

    def covers(self, timestamp):
        return bool(self.timestamps) and self.first_timestamp <= timestamp <= self.last_timestamp

    def get(self, timestamp, default=None):
        """Point at a timestamp, or `default` if the track does not cover it."""
        try:
            return self.points[self.timestamps.index(timestamp)]
        except ValueError:
            return default

    def items(self):
        return list(zip(self.timestamps, self.points))

    def as_array(self):
        return np.array(self.points, dtype=np.float64).reshape(-1, 2)


class TrackBuilder:
    """
    Chains inlier matches of consecutive frame pairs into tracks.
    """

    def __init__(self, config):
        self.config = config

    def build(self, match_sets, timestamps, cancel_check=None):
        """
        Build tracks over the whole working zone.

        Args:
            match_sets: MatchSet per frame pair (None for pairs without matches)
            timestamps: Timestamp of each frame
            cancel_check: Optional callable raising when the run is cancelled

        Returns:
            List of closed Track objects, ordered by creation
        """
        tracks = []
        # Open tracks keyed by the feature index of their tail in the current frame.
        open_tracks = {}

        for i, match_set in enumerate(match_sets):
            if cancel_check is not None:
                cancel_check()

            continued = {}
            if match_set is not None and len(match_set) > 0:
                for k in np.flatnonzero(match_set.inliers):
                    src = int(match_set.src_idx[k])
                    dst = int(match_set.dst_idx[k])
                    if dst in continued:
                        # Another match already claimed this target feature.
                        continue

                    track = open_tracks.pop(src, None)
                    if track is None:
                        track = Track(len(tracks), i)
                        track.append(timestamps[i], match_set.p1[k])
                        tracks.append(track)

                    track.append(timestamps[i + 1], match_set.p2[k])
                    continued[dst] = track

            for track in open_tracks.values():
                track.close()
            open_tracks = continued

        for track in open_tracks.values():
            track.close()

        logger.debug("Built %d tracks over %d frame pairs", len(tracks), len(match_sets))
        return tracks
