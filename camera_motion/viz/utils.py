"""
Export utilities for camera motion results.

This module provides helper functions to save tracks, transforms and
rendered frames.
"""

import csv
import json
import logging
import math
import os
from datetime import datetime

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def create_output_dir(dirname='output'):
    """
    Create output directory if it doesn't exist.

    Args:
        dirname: Directory name to create

    Returns:
        Path to the created directory
    """
    if not os.path.exists(dirname):
        os.makedirs(dirname)
    return dirname


def _output_path(filename, output_dir, prefix, extension):
    create_output_dir(output_dir)
    if filename is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{prefix}_{timestamp}.{extension}"
    return os.path.join(output_dir, filename)


def save_tracks_to_csv(time_vector, data, filename=None, output_dir='output'):
    """
    Save track series to a CSV file, one row per timestamp.

    Args:
        time_vector: Timestamps from CameraTracker.collect_time_vector()
        data: Track series from CameraTracker.collect_data()
        filename: Output filename or None for automatic timestamp-based name
        output_dir: Output directory

    Returns:
        Path to the saved file
    """
    filepath = _output_path(filename, output_dir, 'tracks', 'csv')

    names = list(data.keys())
    headers = ['timestamp']
    for name in names:
        headers.extend([f'{name}_x', f'{name}_y'])

    with open(filepath, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(headers)

        for row_index, timestamp in enumerate(time_vector):
            row = [timestamp]
            for name in names:
                x, y = data[name][row_index]
                # Empty cells outside the lifetime of a track
                if math.isnan(x) or math.isnan(y):
                    row.extend(['', ''])
                else:
                    row.extend([f'{x:.3f}', f'{y:.3f}'])
            writer.writerow(row)

    logger.info("Saved %d tracks to %s", len(names), filepath)
    return filepath


def save_tracks_to_json(tracks, filename=None, output_dir='output', metadata=None):
    """
    Save tracks to a JSON file.

    Args:
        tracks: List of Track
        filename: Output filename or None for automatic timestamp-based name
        output_dir: Output directory
        metadata: Optional dictionary with additional metadata

    Returns:
        Path to the saved file
    """
    filepath = _output_path(filename, output_dir, 'tracks', 'json')

    data = {
        'timestamp': datetime.now().isoformat(),
        'tracks_count': len(tracks),
        'tracks': []
    }

    if metadata is not None:
        data['metadata'] = metadata

    for track in tracks:
        data['tracks'].append({
            'id': track.id,
            'start_index': track.start_index,
            'points': [{'timestamp': t, 'x': p[0], 'y': p[1]} for t, p in track.items()],
        })

    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)

    logger.info("Saved %d tracks to %s", len(tracks), filepath)
    return filepath


def save_transforms_to_json(chain, timestamps, filename=None, output_dir='output', metadata=None):
    """
    Save the frame-to-frame homographies to a JSON file.

    Args:
        chain: TransformChain
        timestamps: Timestamp of each frame
        filename: Output filename or None for automatic timestamp-based name
        output_dir: Output directory
        metadata: Optional dictionary with additional metadata

    Returns:
        Path to the saved file
    """
    filepath = _output_path(filename, output_dir, 'transforms', 'json')

    data = {
        'timestamp': datetime.now().isoformat(),
        'transforms': []
    }

    if metadata is not None:
        data['metadata'] = metadata

    for i, H in enumerate(chain):
        data['transforms'].append({
            'from': timestamps[i],
            'to': timestamps[i + 1],
            # null for pairs without a transform
            'homography': None if H is None else np.asarray(H).tolist(),
        })

    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)

    logger.info("Saved %d transforms to %s", len(chain), filepath)
    return filepath


def save_visualization_image(image, filename=None, output_dir='output'):
    """
    Save visualization image to file.

    Args:
        image: Image to save
        filename: Output filename or None for automatic timestamp-based name
        output_dir: Output directory

    Returns:
        Path to the saved file
    """
    filepath = _output_path(filename, output_dir, 'visualization', 'png')
    cv2.imwrite(filepath, image)

    logger.info("Saved visualization to %s", filepath)
    return filepath
