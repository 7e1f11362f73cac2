#!/usr/bin/env python3
"""
Test script for the background removal session: load, process, save, reset.
"""
import sys
import os
import io
import tempfile
import numpy as np
from PIL import Image

# Add current directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chroma_key_remover import Color, EncodingFailed, ImageLoadFailed, InvalidColorSpec, NoImageLoaded
from image_sink import decode_image
import removal_session
from removal_session import BackgroundRemovalSession


def create_test_png(width=64, height=64):
    """Green background with a red square in the center, as PNG bytes."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = [0, 255, 0]

    center_size = min(width, height) // 3
    start_x = (width - center_size) // 2
    start_y = (height - center_size) // 2
    image[start_y:start_y+center_size, start_x:start_x+center_size] = [255, 0, 0]

    output = io.BytesIO()
    Image.fromarray(image).save(output, format="PNG")
    return output.getvalue()


def test_process_without_image():
    print("Testing process before load...")

    session = BackgroundRemovalSession()
    try:
        session.process()
        assert False, "Should raise NoImageLoaded"
    except NoImageLoaded:
        pass

    try:
        session.save_result(tempfile.gettempdir())
        assert False, "Should raise NoImageLoaded"
    except NoImageLoaded:
        pass

    assert session.get_state() == {
        "is_processing": False,
        "progress": 0,
        "has_image": False,
        "has_processed_image": False,
        "image_info": None,
    }
    print("✓ NoImageLoaded raised, nothing changed")


def test_load_and_process():
    print("\nTesting load and process...")

    session = BackgroundRemovalSession()
    data = create_test_png()
    info = session.load_image(data, name="sprite.png", mime_type="image/png")
    assert info == {"name": "sprite.png", "size": len(data), "type": "image/png",
                    "width": 64, "height": 64}
    assert session.get_state()["has_image"]

    progress = []
    result = session.process(tolerance=30, on_progress=progress.append)
    assert progress == [10, 10, 90, 100], progress
    assert session.background_color == Color(0, 250, 0)

    decoded = decode_image(result)
    alpha = decoded.rgba()[:, :, 3]
    assert alpha[0, 0] == 0 and alpha[63, 63] == 0
    assert alpha[32, 32] == 255

    state = session.get_state()
    assert state["progress"] == 100
    assert state["has_processed_image"]
    assert not state["is_processing"]
    assert state["image_info"] == {"width": 64, "height": 64}
    print("✓ Background removed and encoded")


def test_reprocess_starts_from_original():
    print("\nTesting reprocessing with another color...")

    session = BackgroundRemovalSession()
    session.load_image(create_test_png(), name="sprite.png")
    session.process(tolerance=30)

    result = session.process(tolerance=10, background_color="#ff0000")
    alpha = decode_image(result).rgba()[:, :, 3]
    assert alpha[0, 0] == 255, "Green must be opaque again"
    assert alpha[32, 32] == 0, "Red subject keyed out"
    assert session.background_color == Color(255, 0, 0)

    original_alpha = decode_image(session.original_png()).rgba()[:, :, 3]
    assert np.all(original_alpha == 255), "Original stays untouched"
    print("✓ Each run keys a fresh copy")


def test_invalid_inputs():
    print("\nTesting invalid inputs...")

    session = BackgroundRemovalSession()
    try:
        session.load_image(create_test_png(), name="notes.txt")
        assert False, "Should reject unsupported extension"
    except ImageLoadFailed as e:
        assert "PNG" in str(e)

    try:
        session.load_image(b"garbage", name="broken.png")
        assert False, "Should reject corrupt data"
    except ImageLoadFailed:
        pass
    assert not session.get_state()["has_image"]

    session.load_image(create_test_png(), name="sprite.png")
    try:
        session.process(background_color="#xyz")
        assert False, "Should reject malformed color"
    except InvalidColorSpec:
        pass
    state = session.get_state()
    assert not state["is_processing"] and state["progress"] == 0
    print("✓ Invalid files and colors rejected")


def test_failure_mid_run_resets_state():
    print("\nTesting state after a failure during processing...")

    class ObserverFailed(Exception):
        pass

    session = BackgroundRemovalSession()
    session.load_image(create_test_png(), name="sprite.png")
    seen = []

    def observer(percent):
        seen.append((percent, session.is_processing))
        if len(seen) == 2:
            raise ObserverFailed()

    try:
        session.process(tolerance=30, on_progress=observer)
        assert False, "Observer failure should propagate"
    except ObserverFailed:
        pass

    assert seen[0] == (10, True), "Failure must happen mid-run"
    state = session.get_state()
    assert state["is_processing"] is False
    assert state["progress"] == 0
    assert state["has_processed_image"] is False
    assert state["has_image"], "Loaded image is kept for a retry"

    result = session.process(tolerance=30)
    assert decode_image(result).rgba()[0, 0, 3] == 0
    print("✓ State reset and retry succeeded")


def test_encoding_failure_resets_state():
    print("\nTesting encoding failure...")

    session = BackgroundRemovalSession()
    session.load_image(create_test_png(), name="sprite.png")

    original_encode = removal_session.encode_png

    def failing_encode(buffer):
        raise EncodingFailed("disk full")

    removal_session.encode_png = failing_encode
    try:
        session.process()
        assert False, "Should raise EncodingFailed"
    except EncodingFailed:
        pass
    finally:
        removal_session.encode_png = original_encode

    state = session.get_state()
    assert state["is_processing"] is False
    assert state["progress"] == 0
    assert state["has_processed_image"] is False
    print("✓ EncodingFailed propagated, state reset")


def test_missing_path():
    print("\nTesting missing path...")

    session = BackgroundRemovalSession()
    with tempfile.TemporaryDirectory() as tmp_dir:
        try:
            session.load_image(os.path.join(tmp_dir, "missing.png"))
            assert False, "Should raise ImageLoadFailed"
        except ImageLoadFailed:
            pass
    assert session.image_info is None
    assert not session.get_state()["has_image"]
    print("✓ Missing file rejected before any info is recorded")


def test_load_from_path_and_save():
    print("\nTesting path loading and saving...")

    with tempfile.TemporaryDirectory() as tmp_dir:
        source = os.path.join(tmp_dir, "logo.png")
        with open(source, "wb") as f:
            f.write(create_test_png(48, 32))

        session = BackgroundRemovalSession()
        info = session.load_image(source)
        assert info["name"] == "logo.png"
        assert (info["width"], info["height"]) == (48, 32)

        session.process()
        assert session.output_filename() == "logo_sin_fondo.png"

        out_dir = os.path.join(tmp_dir, "out")
        os.makedirs(out_dir)
        path = session.save_result(out_dir)
        assert path.name == "logo_sin_fondo.png"
        assert decode_image(path).rgba()[0, 0, 3] == 0
    print("✓ Loaded from path and saved result")


def test_reset():
    print("\nTesting reset...")

    session = BackgroundRemovalSession()
    session.load_image(create_test_png(), name="sprite.png")
    session.process()
    session.reset()

    state = session.get_state()
    assert not state["has_image"] and not state["has_processed_image"]
    assert state["progress"] == 0
    assert session.output_filename() == "imagen_sin_fondo.png"
    assert session.original_png() is None
    print("✓ Session cleared")


def main():
    """Run all session tests"""
    print("🧪 Running Background Removal Session Tests")
    print("=" * 50)

    tests = [
        test_process_without_image,
        test_load_and_process,
        test_reprocess_starts_from_original,
        test_invalid_inputs,
        test_failure_mid_run_resets_state,
        test_encoding_failure_resets_state,
        test_missing_path,
        test_load_from_path_and_save,
        test_reset,
    ]

    for test in tests:
        test()

    print()
    print("=" * 50)
    print(f"🎉 All {len(tests)} tests PASSED!")


if __name__ == "__main__":
    main()
