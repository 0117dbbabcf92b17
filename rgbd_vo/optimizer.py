"""
Coarse-to-fine Levenberg-Marquardt estimation of the rigid motion between
two RGB-D frames by direct photometric alignment.

The estimated transform T maps points from frame-1 camera coordinates into
frame-2 camera coordinates. Levels are processed from the coarsest
(index L-1) to the finest (index 0); each level starts from the transform
reached on the previous one.

Per iteration the damped, weighted normal equations

    (J^T W J + lambda * diag(J^T W J)) dxi = -J^T W r

are solved and the candidate exp(dxi) * T is accepted only if it lowers
the cost mean(w * r^2). Accepted steps divide lambda by `lambda_down`,
rejected steps multiply it by `lambda_up`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence

import numpy as np

from .camera import CameraPyramid
from .errors import ConfigurationError, InsufficientDataError, NumericalError, validate_and_raise
from .logging_config import get_logger
from .residuals import DEFAULT_BLOCK_SIZE, ResidualJacobian, compute_residual_jacobian
from .robust import T_DIST_DOF, RobustEstimator, compute_weights
from .se3 import is_rigid_transform, rot_angle_deg, se3_exp, se3_log

logger = get_logger("optimizer")

DEFAULT_LAMBDA = 0.001
DEFAULT_PRECISION = 5e-7
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_HUBER_DELTA = 4.0 / 255.0


@dataclass
class OptimizerConfig:
    """Fixed hyperparameters of the optimizer, validated on construction.

    max_iterations is indexed by pyramid level (0 = finest).
    """
    max_iterations: Sequence[int] = (DEFAULT_MAX_ITERATIONS,) * 4
    precision: float = DEFAULT_PRECISION
    robust_estimator: RobustEstimator = RobustEstimator.NONE
    huber_delta: float = DEFAULT_HUBER_DELTA
    t_dof: float = T_DIST_DOF
    use_vectorized: bool = True
    num_threads: Optional[int] = None
    block_size: int = DEFAULT_BLOCK_SIZE
    min_residuals: int = 6
    min_step: float = 1e-9
    max_condition: float = 1e12
    lambda_up: float = 10.0
    lambda_down: float = 10.0
    lambda_min: float = float(np.finfo(np.float64).tiny)

    def __post_init__(self):
        self.robust_estimator = RobustEstimator.parse(self.robust_estimator)
        try:
            self.max_iterations = tuple(int(n) for n in self.max_iterations)
        except (TypeError, ValueError):
            raise ConfigurationError(f"max_iterations must be a sequence of ints, got {self.max_iterations!r}") from None
        validate_and_raise(len(self.max_iterations) > 0, "max_iterations must have one entry per pyramid level")
        for i, iters in enumerate(self.max_iterations):
            validate_and_raise(iters > 0, f"max_iterations[{i}] = {iters} must be > 0")
        validate_and_raise(np.isfinite(self.precision) and self.precision >= 0,
                           f"precision = {self.precision} must be finite and >= 0")
        validate_and_raise(np.isfinite(self.huber_delta) and self.huber_delta > 0,
                           f"huber_delta = {self.huber_delta} must be > 0")
        validate_and_raise(self.t_dof > 0, f"t_dof = {self.t_dof} must be > 0")
        validate_and_raise(self.num_threads is None or self.num_threads > 0,
                           f"num_threads = {self.num_threads} must be > 0")
        validate_and_raise(self.min_residuals >= 6, f"min_residuals = {self.min_residuals} must be >= 6")
        validate_and_raise(self.min_step >= 0, f"min_step = {self.min_step} must be >= 0")
        validate_and_raise(self.max_condition > 1, f"max_condition = {self.max_condition} must be > 1")
        validate_and_raise(self.lambda_up > 1, f"lambda_up = {self.lambda_up} must be > 1")
        validate_and_raise(self.lambda_down > 1, f"lambda_down = {self.lambda_down} must be > 1")
        validate_and_raise(self.lambda_min > 0, f"lambda_min = {self.lambda_min} must be > 0")

    @property
    def levels(self) -> int:
        return len(self.max_iterations)


class StepRecord(NamedTuple):
    accepted: bool
    lambda_before: float
    lambda_after: float
    cost_before: float
    cost_after: float       # candidate cost, inf if the candidate had too few residuals
    step_norm: float


@dataclass
class LevelStatistics:
    level: int
    max_iterations: int
    iterations: int = 0
    accepted: int = 0
    rejected: int = 0
    num_residual: int = 0
    cost_before: float = float("nan")
    cost_after: float = float("nan")
    lambda_final: float = float("nan")
    termination: str = "max_iterations"
    history: List[StepRecord] = field(default_factory=list)


@dataclass
class PoseEstimate:
    transform: np.ndarray
    statistics: List[LevelStatistics]
    lambda_: float


def validate_transform(T, name: str = "initial_transform") -> np.ndarray:
    T = np.asarray(T, dtype=np.float64)
    validate_and_raise(is_rigid_transform(T), f"{name} must be a finite 4x4 rigid transform")
    return T.copy()


def validate_lambda(lambda_) -> float:
    validate_and_raise(lambda_ is not None and np.isfinite(lambda_) and lambda_ > 0,
                       f"lambda must be finite and > 0, got {lambda_}")
    return float(lambda_)


def check_pyramids(camera: CameraPyramid, image_pyr1, depth_pyr1, image_pyr2, levels: int) -> None:
    counts = {
        "camera": camera.level_count(),
        "image_pyr1": image_pyr1.level_count(),
        "depth_pyr1": depth_pyr1.level_count(),
        "image_pyr2": image_pyr2.level_count(),
        "max_iterations": levels,
    }
    if len(set(counts.values())) != 1:
        raise ConfigurationError(f"pyramid level counts disagree: {counts}")
    for level in range(levels):
        img1, dep1, img2 = image_pyr1.at(level), depth_pyr1.at(level), image_pyr2.at(level)
        if img1.size == 0 or img2.size == 0 or dep1.size == 0:
            raise ConfigurationError(f"empty frame at pyramid level {level}")
        if img1.shape != dep1.shape:
            raise ConfigurationError(
                f"level {level}: intensity {img1.shape} and depth {dep1.shape} of frame 1 differ in shape")


def solve_damped_normal_equations(J: np.ndarray, w: np.ndarray, r: np.ndarray, lambda_: float,
                                  max_condition: float = 1e12) -> np.ndarray:
    """Solve (J^T W J + lambda * diag(J^T W J)) dxi = -J^T W r."""
    Jw = J * w[:, None]
    H = Jw.T @ J
    g = Jw.T @ r
    A = H + lambda_ * np.diag(np.diag(H))
    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(g))):
        raise NumericalError("normal equations contain non-finite values")
    cond = np.linalg.cond(A)
    if not np.isfinite(cond) or cond > max_condition:
        raise NumericalError(f"normal equations are ill-conditioned (cond = {cond:.3e})")
    try:
        dxi = np.linalg.solve(A, -g)
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"normal equations are singular: {e}") from e
    if not np.all(np.isfinite(dxi)):
        raise NumericalError("solution of the normal equations is not finite")
    return dxi


class _LevelProblem:
    """Residuals, weights and cost of one pyramid level at a given transform."""

    def __init__(self, img1, dep1, img2, cam, config: OptimizerConfig):
        self.img1, self.dep1, self.img2, self.cam = img1, dep1, img2, cam
        self.config = config

    def evaluate(self, T: np.ndarray) -> tuple[ResidualJacobian, np.ndarray, float]:
        c = self.config
        if c.use_vectorized:
            rj = compute_residual_jacobian(self.img1, self.img2, self.dep1, T, self.cam, vectorized=True,
                                           block_size=c.block_size, num_threads=c.num_threads)
        else:
            rj = compute_residual_jacobian(self.img1, self.img2, self.dep1, T, self.cam, vectorized=False)
        if rj.num_residual < c.min_residuals:
            raise InsufficientDataError(
                f"only {rj.num_residual} valid residuals, need at least {c.min_residuals}")
        w = compute_weights(rj.residual, c.robust_estimator, c.huber_delta, c.t_dof,
                            vectorized=c.use_vectorized)
        cost = float(np.mean(w * rj.residual * rj.residual))
        return rj, w, cost


def _optimize_level(problem: _LevelProblem, T: np.ndarray, lambda_: float,
                    stats: LevelStatistics) -> tuple[np.ndarray, float]:
    c = problem.config
    try:
        rj, w, cost = problem.evaluate(T)
    except InsufficientDataError as e:
        raise InsufficientDataError(f"pyramid level {stats.level}: {e}") from e
    stats.cost_before = cost
    stats.num_residual = rj.num_residual

    while stats.iterations < stats.max_iterations:
        dxi = solve_damped_normal_equations(rj.jacobian, w, rj.residual, lambda_, c.max_condition)
        step_norm = float(np.linalg.norm(dxi))
        if step_norm < c.min_step:
            stats.termination = "small_step"
            break

        T_cand = se3_exp(dxi) @ T
        try:
            cand = problem.evaluate(T_cand)
        except InsufficientDataError:
            cand = None
        stats.iterations += 1
        lambda_before = lambda_

        if cand is not None and cand[2] < cost:
            rel_improvement = (cost - cand[2]) / cost
            lambda_ = max(lambda_ / c.lambda_down, c.lambda_min)
            stats.accepted += 1
            stats.history.append(StepRecord(True, lambda_before, lambda_, cost, cand[2], step_norm))
            logger.debug(f"level {stats.level} iter {stats.iterations}: accepted, "
                         f"cost {cost:.6e} -> {cand[2]:.6e}, lambda {lambda_:.3e}")
            T = T_cand
            rj, w, cost = cand
            if rel_improvement < c.precision:
                stats.termination = "converged"
                break
        else:
            cand_cost = float("inf") if cand is None else cand[2]
            lambda_ = lambda_ * c.lambda_up
            stats.rejected += 1
            stats.history.append(StepRecord(False, lambda_before, lambda_, cost, cand_cost, step_norm))
            logger.debug(f"level {stats.level} iter {stats.iterations}: rejected, "
                         f"cost {cost:.6e} vs {cand_cost:.6e}, lambda {lambda_:.3e}")

    stats.cost_after = cost
    stats.num_residual = rj.num_residual
    stats.lambda_final = lambda_
    return T, lambda_


def estimate_pose(camera: CameraPyramid, image_pyr1, depth_pyr1, image_pyr2,
                  config: Optional[OptimizerConfig] = None,
                  initial_transform: Optional[np.ndarray] = None,
                  lambda_: float = DEFAULT_LAMBDA) -> PoseEstimate:
    """
    Estimate the transform aligning frame 1 onto frame 2, coarse to fine.

    Pure function: all per-pair state (transform, damping, statistics) is
    local to the call and returned in the PoseEstimate.

    Raises:
        ConfigurationError: invalid initial transform, lambda, or pyramids
        InsufficientDataError: a level has fewer than `min_residuals` residuals
        NumericalError: the normal equations cannot be solved reliably
    """
    if camera is None:
        raise ConfigurationError("a camera pyramid is required")
    if config is None:
        config = OptimizerConfig(max_iterations=(DEFAULT_MAX_ITERATIONS,) * camera.level_count())
    T = np.eye(4) if initial_transform is None else validate_transform(initial_transform)
    lambda_ = validate_lambda(lambda_)
    check_pyramids(camera, image_pyr1, depth_pyr1, image_pyr2, config.levels)

    statistics: List[LevelStatistics] = []
    for level in reversed(range(config.levels)):
        problem = _LevelProblem(image_pyr1.at(level), depth_pyr1.at(level), image_pyr2.at(level),
                                camera.intrinsics(level), config)
        stats = LevelStatistics(level=level, max_iterations=config.max_iterations[level])
        T, lambda_ = _optimize_level(problem, T, lambda_, stats)
        statistics.append(stats)
        logger.info(f"level {level}: {stats.iterations}/{stats.max_iterations} iters "
                    f"({stats.accepted} accepted, {stats.rejected} rejected, {stats.termination}), "
                    f"cost {stats.cost_before:.6e} -> {stats.cost_after:.6e}, "
                    f"{stats.num_residual} residuals")

    return PoseEstimate(transform=T, statistics=statistics, lambda_=lambda_)


def format_report(statistics: Sequence[LevelStatistics]) -> List[str]:
    lines = [f"{'level':>5} {'iters':>9} {'acc':>4} {'rej':>4} {'residuals':>9} "
             f"{'cost before':>12} {'cost after':>12} {'lambda':>10}  termination"]
    for s in statistics:
        lines.append(f"{s.level:>5} {s.iterations:>4}/{s.max_iterations:<4} {s.accepted:>4} {s.rejected:>4} "
                     f"{s.num_residual:>9} {s.cost_before:>12.5e} {s.cost_after:>12.5e} "
                     f"{s.lambda_final:>10.3e}  {s.termination}")
    return lines


class LevenbergMarquardtOptimizer:
    """
    Stateful wrapper around `estimate_pose` for tracking a frame sequence.

    Holds the damping factor, the initial transform and the statistics of
    the last `solve`. Call `reset` between frame pairs; `solve` itself
    leaves the damping where the last pair ended.

    The camera pyramid is borrowed, not copied, and must outlive the
    optimizer. One instance must not run `solve` from several threads at
    once; independent streams should use independent instances sharing
    the camera.
    """

    def __init__(self, camera: CameraPyramid,
                 lambda_: float = DEFAULT_LAMBDA,
                 precision: float = DEFAULT_PRECISION,
                 max_iterations: Optional[Sequence[int]] = None,
                 initial_transform: Optional[np.ndarray] = None,
                 robust_estimator=RobustEstimator.NONE,
                 huber_delta: float = DEFAULT_HUBER_DELTA,
                 **options):
        if camera is None:
            raise ConfigurationError("a camera pyramid is required")
        if max_iterations is None:
            max_iterations = (DEFAULT_MAX_ITERATIONS,) * camera.level_count()
        self.config = OptimizerConfig(max_iterations=max_iterations, precision=precision,
                                      robust_estimator=robust_estimator, huber_delta=huber_delta,
                                      **options)
        if self.config.levels != camera.level_count():
            raise ConfigurationError(f"max_iterations has {self.config.levels} entries but the camera "
                                     f"pyramid has {camera.level_count()} levels")
        self.camera = camera
        self.affine_init = np.eye(4)
        self.affine = np.eye(4)
        self.lambda_ = DEFAULT_LAMBDA
        self.statistics: List[LevelStatistics] = []
        self.reset(np.eye(4) if initial_transform is None else initial_transform, lambda_)

    def solve(self, image_pyr1, depth_pyr1, image_pyr2) -> np.ndarray:
        """Transform taking frame-1 camera coordinates to frame-2 camera coordinates."""
        result = estimate_pose(self.camera, image_pyr1, depth_pyr1, image_pyr2,
                               self.config, self.affine_init, self.lambda_)
        self.affine = result.transform
        self.lambda_ = result.lambda_
        self.statistics = result.statistics
        return result.transform.copy()

    def reset(self, initial_transform: np.ndarray, lambda_: float) -> None:
        """Install a new initial transform and damping; clear the last result and statistics."""
        affine_init = validate_transform(initial_transform)
        lambda_ = validate_lambda(lambda_)
        self.affine_init = affine_init
        self.lambda_ = lambda_
        self.affine = np.eye(4)
        self.statistics = []

    def report(self) -> List[LevelStatistics]:
        return list(self.statistics)

    def show_report(self) -> None:
        if not self.statistics:
            logger.info("no statistics recorded, call solve() first")
            return
        for line in format_report(self.statistics):
            logger.info(line)
        R = self.affine[:3, :3]
        logger.info(f"|t| = {np.linalg.norm(self.affine[:3, 3]):.4f}, rot = {rot_angle_deg(R):.3f} deg, "
                    f"xi = {np.array2string(se3_log(self.affine), precision=5)}")
