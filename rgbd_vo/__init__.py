"""Dense RGB-D visual odometry with a coarse-to-fine Levenberg-Marquardt solver."""

from .camera import CameraIntrinsics, CameraPyramid
from .errors import ConfigurationError, InsufficientDataError, NumericalError, OdometryError
from .optimizer import (LevelStatistics, LevenbergMarquardtOptimizer, OptimizerConfig, PoseEstimate,
                        estimate_pose)
from .pyramid import DepthPyramid, ImagePyramid
from .residuals import (ResidualJacobian, compute_residual_jacobian_naive,
                        compute_residual_jacobian_vectorized)
from .robust import RobustEstimator, compute_weights

__version__ = "0.1.0"

__all__ = [
    "CameraIntrinsics",
    "CameraPyramid",
    "ConfigurationError",
    "DepthPyramid",
    "ImagePyramid",
    "InsufficientDataError",
    "LevelStatistics",
    "LevenbergMarquardtOptimizer",
    "NumericalError",
    "OdometryError",
    "OptimizerConfig",
    "PoseEstimate",
    "ResidualJacobian",
    "RobustEstimator",
    "compute_residual_jacobian_naive",
    "compute_residual_jacobian_vectorized",
    "compute_weights",
    "estimate_pose",
]
