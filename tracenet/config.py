"""Validated configuration objects for structural tensor operations.

Configuration is checked when it is created, so a bad filter size, stride,
dilation or probability is rejected before any forward definition is traced.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ConfigurationError


@dataclass(frozen=True)
class WindowConfig:
    """Receptive field of a pooling or convolution operation.

    Attributes:
        filter_row_size (int): Window height in input cells.
        filter_column_size (int): Window width in input cells.
        stride (int): Step between the origins of two neighbouring windows.
            Controls down-sampling of the output.
        dilation (int): Step between two sampled input cells inside one
            window. `1` samples contiguous cells.
    """

    filter_row_size: int
    filter_column_size: int
    stride: int = 1
    dilation: int = 1

    def __post_init__(self) -> None:
        """Validate all sizes.

        Raises:
            ConfigurationError: If any size is smaller than 1.
        """
        for field_name in ("filter_row_size", "filter_column_size", "stride", "dilation"):
            value = getattr(self, field_name)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f'"{field_name}" must be an integer >= 1, got {value!r}.')

    @classmethod
    def square(cls, filter_size: int, *, stride: int = 1, dilation: int = 1) -> WindowConfig:
        """Shortcut for a square window."""
        return cls(filter_size, filter_size, stride=stride, dilation=dilation)

    @property
    def span(self) -> tuple[int, int]:
        """Number of input rows and columns covered by one dilated window."""
        return (
            self.dilation * (self.filter_row_size - 1) + 1,
            self.dilation * (self.filter_column_size - 1) + 1,
        )

    def output_size(self, rows: int, columns: int) -> tuple[int, int]:
        """Output rows and columns for an input of `rows x columns` (no padding).

        Args:
            rows (int): Input rows.
            columns (int): Input columns.

        Raises:
            ConfigurationError: If the dilated window does not fit the input.

        Returns:
            tuple[int, int]: Output rows and columns.
        """
        span_rows, span_columns = self.span
        if span_rows > rows or span_columns > columns:
            raise ConfigurationError(
                f"Window spanning {span_rows}x{span_columns} does not fit input {rows}x{columns}."
            )
        return (
            (rows - span_rows) // self.stride + 1,
            (columns - span_columns) // self.stride + 1,
        )


def validate_probability(probability: float, *, name: str = "probability") -> float:
    """Check that a suppression probability lies in `[0, 1)`.

    Args:
        probability (float): The candidate value.
        name (str): Name used in the error message.

    Raises:
        ConfigurationError: If the value is outside `[0, 1)`.

    Returns:
        float: The probability as float.
    """
    if not 0 <= probability < 1:
        raise ConfigurationError(f'"{name}" must be in [0, 1), got {probability!r}.')
    return float(probability)


__all__ = [
    "WindowConfig",
    "validate_probability",
]
