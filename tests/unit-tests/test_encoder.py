from __future__ import annotations

import numpy as np
import pytest

from fresco.config import ModelIOSpec
from fresco.decoder import decode
from fresco.encoder import FrameToTensorEncoder, encode, to_rgb_image
from fresco.errors import EncodingError
from fresco.tensor import Layout


def test_same_size_nhwc_keeps_pixels(half_red_frame: np.ndarray) -> None:
    tensor = encode(half_red_frame, 4, 4, 4, 4, 3, Layout.CHANNELS_LAST)
    assert tensor.shape == (1, 4, 4, 3)
    arr = tensor.as_array()
    assert np.allclose(arr[0, :, :2], [1.0, 0.0, 0.0])
    assert np.allclose(arr[0, :, 2:], [0.0, 0.0, 1.0])


def test_nchw_layout_moves_channels_first(half_red_frame: np.ndarray) -> None:
    tensor = encode(half_red_frame, 4, 4, 4, 4, 3, "nchw")
    assert tensor.shape == (1, 3, 4, 4)
    arr = tensor.as_array()
    assert np.allclose(arr[0, 0, :, :2], 1.0)
    assert np.allclose(arr[0, 2, :, 2:], 1.0)
    assert np.allclose(arr[0, 1], 0.0)


def test_flat_rgba_buffer_and_grayscale_target() -> None:
    rgba = np.zeros((2, 2, 4), dtype=np.uint8)
    rgba[..., :3] = (30, 60, 90)
    rgba[..., 3] = 255
    tensor = encode(rgba.tobytes(), 2, 2, 2, 2, 1, Layout.CHANNELS_LAST, normalize=False)
    assert tensor.shape == (1, 2, 2, 1)
    assert np.allclose(tensor.as_array(), 60.0)


def test_mean_std_are_applied_after_scaling(half_red_frame: np.ndarray) -> None:
    tensor = encode(
        half_red_frame, 4, 4, 4, 4, 3, Layout.CHANNELS_LAST, mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5)
    )
    arr = tensor.as_array()
    assert np.allclose(arr[0, 0, 0], [1.0, -1.0, -1.0])


@pytest.mark.parametrize(
    "pixels,width,height",
    [
        (None, 4, 4),
        (np.zeros(0, dtype=np.uint8), 4, 4),
        (np.zeros((4, 4, 3), dtype=np.uint8), 0, 4),
        (np.zeros((4, 4, 3), dtype=np.uint8), 5, 4),
        (np.zeros(4 * 4 * 2, dtype=np.uint8), 4, 4),
    ],
)
def test_malformed_frames_raise_encoding_error(pixels: object, width: int, height: int) -> None:
    with pytest.raises(EncodingError):
        encode(pixels, width, height, 4, 4, 3, Layout.CHANNELS_LAST)


def test_unsupported_channel_count() -> None:
    with pytest.raises(EncodingError):
        encode(np.zeros((4, 4, 3), dtype=np.uint8), 4, 4, 4, 4, 4, Layout.CHANNELS_LAST)


def test_encoder_does_not_alias_source(half_red_frame: np.ndarray) -> None:
    tensor = encode(half_red_frame, 4, 4, 4, 4, 3, Layout.CHANNELS_LAST, normalize=False)
    half_red_frame[:] = 0
    assert tensor.as_array()[0, 0, 0, 0] == 255.0


def test_grayscale_frame_is_replicated() -> None:
    gray = np.full((3, 2), 9, dtype=np.uint8)
    rgb = to_rgb_image(gray, 2, 3)
    assert rgb.shape == (3, 2, 3)
    assert np.all(rgb == 9.0)


def test_resize_and_decode_uniform_colour_round_trip() -> None:
    pytest.importorskip("cv2")
    frame = np.zeros((6, 8, 3), dtype=np.uint8)
    frame[...] = (255, 0, 0)
    tensor = encode(frame, 8, 6, 4, 4, 3, Layout.CHANNELS_LAST)
    assert tensor.shape == (1, 4, 4, 3)
    assert np.allclose(tensor.as_array()[0], [1.0, 0.0, 0.0], atol=1e-5)

    red = decode(tensor, tensor.shape, Layout.CHANNELS_LAST, 0, 0.5)
    green = decode(tensor, tensor.shape, Layout.CHANNELS_LAST, 1, 0.5)
    assert (red.width, red.height) == (4, 4)
    assert np.all(red.data == 255)
    assert np.all(green.data == 0)


def test_centre_crop_keeps_model_aspect() -> None:
    pytest.importorskip("cv2")
    frame = np.zeros((4, 8, 3), dtype=np.uint8)
    frame[:, 2:6] = (0, 255, 0)
    encoder = FrameToTensorEncoder(crop=True)
    spec = ModelIOSpec(input_width=4, input_height=4, class_count=3)
    tensor = encoder.encode(frame, 8, 4, spec)
    assert tensor.name == "images"
    assert np.allclose(tensor.as_array()[0, ..., 1], 1.0)


def test_non_numeric_buffer_is_encoding_error() -> None:
    with pytest.raises(EncodingError):
        to_rgb_image(np.full((4, 4, 3), "x"), 4, 4)


def test_non_integer_dimensions_are_encoding_error(half_red_frame: np.ndarray) -> None:
    with pytest.raises(EncodingError):
        to_rgb_image(half_red_frame, "four", 4)
    with pytest.raises(EncodingError):
        encode(half_red_frame, 4, 4, None, 4, 3, Layout.CHANNELS_LAST)


def test_resize_without_opencv_is_encoding_error(monkeypatch: pytest.MonkeyPatch, half_red_frame: np.ndarray) -> None:
    from fresco import encoder

    monkeypatch.setattr(encoder, "cv2", None)
    with pytest.raises(EncodingError):
        encode(half_red_frame, 4, 4, 8, 8, 3, Layout.CHANNELS_LAST)
