class CalibrationError(ValueError):
    """Base class for every failure the calibration core reports."""
    kind = "calibration_error"


class InsufficientPoints(CalibrationError):
    kind = "insufficient_points"

    def __init__(self, required: int, provided: int):
        self.required = required
        self.provided = provided
        super().__init__(
            f"Insufficient points: at least {required} required, {provided} provided."
        )


class InvalidData(CalibrationError):
    kind = "invalid_data"


class SingularMatrix(CalibrationError):
    kind = "singular_matrix"

    def __init__(self, message: str = "Singular matrix: the points may be collinear or coincident."):
        super().__init__(message)


class DegenerateConfiguration(CalibrationError):
    kind = "degenerate_configuration"
