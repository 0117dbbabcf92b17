"""
Error types for rgbd_vo.

Only structural failures are raised. Rejected LM steps are absorbed by the
damping adaptation and never surface as errors.
"""


class OdometryError(Exception):
    """Base exception for rgbd_vo errors"""
    pass


class ConfigurationError(OdometryError):
    """Invalid hyperparameters, initial transform or input pyramids"""
    pass


class InsufficientDataError(OdometryError):
    """A pyramid level has too few valid residuals to constrain the pose"""
    pass


class NumericalError(OdometryError):
    """Normal equations are singular or too ill-conditioned to solve"""
    pass


def validate_and_raise(condition: bool, error_message: str,
                       error_type: type = ConfigurationError) -> None:
    """
    Validate condition and raise error with message if false.

    Args:
        condition: Condition to validate
        error_message: Error message if condition fails
        error_type: Type of error to raise

    Raises:
        error_type: If condition is False
    """
    if not condition:
        raise error_type(error_message)
