#!/usr/bin/env python3
"""Verify that tracenet is correctly installed and functional.

Meant to be run in an isolated environment against the built wheel.
"""

import tracenet


def test_version() -> None:
    """Verify version is accessible."""
    print(f"tracenet version: {tracenet.__version__}")
    assert tracenet.__version__, "Version should not be empty"


def test_tensor_operations() -> None:
    """Test basic tensor creation and operations."""
    x = tracenet.Tensor.from_array([1.0, 2.0, 3.0])
    y = x * 2
    total = y.sum()
    assert total.item() == 12.0, f"Expected 12.0, got {total.item()}"


def test_model_forward() -> None:
    """Test basic model creation, forward and backward pass."""
    model = tracenet.Sequential(
        [
            tracenet.Dense(3, 4, activation="relu"),
            tracenet.Dense(4, 1),
        ]
    )

    x = tracenet.Tensor.from_array([1.0, 2.0, 3.0])
    out = model(x)
    assert out.shape == (1, 1, 1), f"Expected (1, 1, 1), got {out.shape}"
    gradient = model.backward(tracenet.Tensor.from_number(1.0))
    assert gradient.shape == (3, 1, 1), f"Expected (3, 1, 1), got {gradient.shape}"


def main() -> None:
    """Run all verification tests."""
    print("Running installation verification tests...")
    print("-" * 40)

    test_version()
    test_tensor_operations()
    test_model_forward()

    print("-" * 40)
    print("All installation tests passed!")


if __name__ == "__main__":
    main()
