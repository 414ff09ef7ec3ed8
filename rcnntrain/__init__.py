"""rcnntrain: training engine for two-stage region-proposal detectors.

This package drives joint or staged training of a proposal network (pnet)
and a classification network (cnet), and scores detections against ground
truth with PASCAL VOC style average precision.
"""

__version__ = "0.1.0"
__author__ = "rcnntrain developers"
