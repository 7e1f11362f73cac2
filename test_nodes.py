#!/usr/bin/env python3
"""
Test script for the ComfyUI nodes running in standalone mode.
"""
import sys
import os
import numpy as np
import torch

# Add current directory to path to import nodes
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from nodes import (
    ChromaKeyBackgroundRemover, ChromaKeyBackgroundRemoverBatch,
    NODE_CLASS_MAPPINGS, NODE_DISPLAY_NAME_MAPPINGS,
)


def create_test_tensor(batch=1, size=64, background=(0.0, 1.0, 0.0), foreground=(1.0, 0.0, 0.0)):
    """ComfyUI IMAGE tensor (B, H, W, C) with a square subject."""
    image = np.zeros((batch, size, size, 3), dtype=np.float32)
    image[:, :, :] = background
    start = size // 3
    end = start + size // 3
    image[:, start:end, start:end] = foreground
    return torch.from_numpy(image)


def test_input_types():
    print("Testing INPUT_TYPES...")

    required = ChromaKeyBackgroundRemover.INPUT_TYPES()["required"]
    assert required["tolerance"][1]["default"] == 30
    assert required["tolerance"][1]["min"] == 0
    assert required["tolerance"][1]["max"] == 255
    assert required["background_color"][1]["default"] == "auto"

    batch_required = ChromaKeyBackgroundRemoverBatch.INPUT_TYPES()["required"]
    assert "images" in batch_required
    print("✓ Node inputs declared")


def test_single_node_auto():
    print("\nTesting single node with auto background...")

    node = ChromaKeyBackgroundRemover()
    image, mask, colors = node.remove_background(create_test_tensor(), tolerance=30)

    assert image.shape == (1, 64, 64, 4), f"Unexpected output shape: {image.shape}"
    assert mask.shape == (1, 64, 64)
    assert colors == "#00fa00"
    assert mask[0, 0, 0].item() == 0.0
    assert mask[0, 32, 32].item() == 1.0
    assert torch.equal(image[0, :, :, 3], mask[0])
    print(f"✓ Output shapes {tuple(image.shape)}, {tuple(mask.shape)}; background {colors}")


def test_single_node_explicit_color_and_format():
    print("\nTesting explicit color with RGB_WITH_MASK...")

    node = ChromaKeyBackgroundRemover()
    image, mask, colors = node.remove_background(
        create_test_tensor(batch=2), tolerance=0, background_color="rgb(255, 0, 0)",
        output_format="RGB_WITH_MASK"
    )

    assert image.shape == (2, 64, 64, 3)
    assert mask.shape == (2, 64, 64)
    assert colors == "#ff0000, #ff0000"
    assert mask[1, 32, 32].item() == 0.0, "Red subject keyed out"
    assert mask[1, 0, 0].item() == 1.0
    print("✓ Explicit color applied to every batch item")


def test_single_node_errors():
    print("\nTesting node errors...")

    node = ChromaKeyBackgroundRemover()
    try:
        node.remove_background(create_test_tensor(), background_color="#xyz123")
        assert False, "Should raise RuntimeError"
    except RuntimeError as e:
        assert "Chroma key failed" in str(e)

    try:
        node.remove_background(torch.zeros((0, 64, 64, 3)))
        assert False, "Should reject empty batch"
    except RuntimeError as e:
        assert "Background removal failed" in str(e)
        assert "No input image provided" in str(e)

    try:
        node.remove_background(create_test_tensor(), tolerance=300)
        assert False, "Should reject out-of-range tolerance"
    except RuntimeError as e:
        assert str(e).startswith("Background removal failed")
    print("✓ Errors surfaced")


def test_batch_node_report():
    print("\nTesting batch node...")

    node = ChromaKeyBackgroundRemoverBatch()
    images, masks, report = node.batch_remove_background(create_test_tensor(batch=3), tolerance=30)

    assert images.shape == (3, 64, 64, 4)
    assert masks.shape == (3, 64, 64)
    assert "Total Images: 3" in report
    assert "Successful: 3" in report
    assert "Failed: 0" in report
    assert "#00fa00" in report
    print(report)


def test_node_registration():
    print("\nTesting node registration...")

    assert set(NODE_CLASS_MAPPINGS) == {"ChromaKeyBackgroundRemover", "ChromaKeyBackgroundRemoverBatch"}
    for name in NODE_CLASS_MAPPINGS:
        assert name in NODE_DISPLAY_NAME_MAPPINGS
        print(f"  - {name}: {NODE_DISPLAY_NAME_MAPPINGS[name]}")
    print("✓ Nodes registered")


def main():
    """Run all node tests."""
    print("Chroma Key Node Test Suite")
    print("=" * 50)

    test_input_types()
    test_single_node_auto()
    test_single_node_explicit_color_and_format()
    test_single_node_errors()
    test_batch_node_report()
    test_node_registration()

    print("\nAll tests completed!")
    print("=" * 50)


if __name__ == "__main__":
    main()
