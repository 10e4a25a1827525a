"""
Utility functions for planar transforms over the working zone.
"""

import cv2
import numpy as np


def transform_points(points, H):
    """
    Apply a homography to a set of points.

    Args:
        points: Points (Nx2)
        H: 3x3 homography

    Returns:
        Transformed points (Nx2, float32)
    """
    points = np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)
    if len(points) == 0:
        return np.zeros((0, 2), dtype=np.float32)
    return cv2.perspectiveTransform(points, np.asarray(H, dtype=np.float64)).reshape(-1, 2)


def motion_field(H, frame_size, points_per_side=25):
    """
    Sample the global motion on a regular grid.

    Args:
        H: Homography from the current frame to the next
        frame_size: (width, height) of the frames
        points_per_side: Number of grid points along each dimension

    Returns:
        sources: Grid points in the current frame (Nx2)
        targets: Their position in the next frame (Nx2)
    """
    width, height = frame_size
    xs = (np.arange(points_per_side) + 0.5) / points_per_side * width
    ys = (np.arange(points_per_side) + 0.5) / points_per_side * height
    grid_x, grid_y = np.meshgrid(xs, ys, indexing='ij')
    sources = np.stack([grid_x.ravel(), grid_y.ravel()], axis=1).astype(np.float32)
    return sources, transform_points(sources, H)


def frame_bounds(chain, index, frame_size, max_frames=25, margin=0.1):
    """
    Project the inner rectangle of previous frames into the current frame.

    Args:
        chain: TransformChain
        index: Current frame index
        frame_size: (width, height) of the frames
        max_frames: Number of previous frames to represent
        margin: Relative margin of the rectangle inside each frame

    Returns:
        List of (frame_index, 4x2 polygon) for each previous frame reachable
        without crossing a hole
    """
    width, height = frame_size
    left, top = width * margin, height * margin
    right, bottom = width * (1 - margin), height * (1 - margin)
    bounds = np.float32([[left, top], [right, top], [right, bottom], [left, bottom]])

    polygons = []
    if index > len(chain):
        return polygons

    for i in range(max(index - max_frames, 0), index):
        H = chain.compose(i, index)
        if H is None:
            continue
        polygons.append((i, transform_points(bounds, H)))
    return polygons


def reprojection_errors(H, p1, p2):
    """Distance between H * p1 and p2 for each correspondence."""
    if len(p1) == 0:
        return np.zeros(0)
    return np.linalg.norm(transform_points(p1, H) - np.asarray(p2, dtype=np.float32), axis=1)
