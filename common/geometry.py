# -*- coding: utf-8 -*-
"""
Point and quadrilateral helpers shared by the localiser and the tracker.
"""
import math
from typing import NamedTuple, Sequence, Tuple


class Point(NamedTuple):
    """Integer pixel coordinate."""
    x: int
    y: int


# top-left, top-right, bottom-right, bottom-left
Quadrilateral = Tuple[Point, Point, Point, Point]


def to_point(pt) -> Point:
    """ Convert any (x, y) pair (tuple, list, numpy row) to a Point. """
    return Point(int(round(float(pt[0]))), int(round(float(pt[1]))))


def distance(p1, p2) -> float:
    """ Euclidean distance between two points. """
    return math.hypot(p2[0] - p1[0], p2[1] - p1[1])


def reorder_points(pts: Sequence) -> Tuple[Point, ...]:
    """ Reorder four points into top-left, top-right, bottom-right, bottom-left.

        TL has the smallest x+y and BR the largest; TR has the smallest y-x
        and BL the largest. Ties are broken on x, so the choice depends only
        on the set of points and never on their order. Anything other than
        four points is returned unchanged.
    """
    if len(pts) != 4:
        return tuple(pts)

    points = [to_point(p) for p in pts]
    tl = min(points, key=lambda p: (p.x + p.y, p.x))
    br = max(points, key=lambda p: (p.x + p.y, p.x))
    tr = min(points, key=lambda p: (p.y - p.x, -p.x))
    bl = max(points, key=lambda p: (p.y - p.x, -p.x))
    return (tl, tr, br, bl)


def is_near_square(pts: Sequence, tolerance: float = 0.25) -> bool:
    """ Check that the two diagonals of a 4-point polygon have similar length.

        Points are taken in polygon order, so the diagonals are 0-2 and 1-3.
        Returns True if they differ by less than `tolerance` of the longer one.
    """
    if len(pts) != 4:
        return False
    d1 = distance(pts[0], pts[2])
    d2 = distance(pts[1], pts[3])
    longest = max(d1, d2)
    if longest == 0:
        return False
    return abs(d1 - d2) / longest < tolerance
