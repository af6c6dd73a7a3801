from __future__ import annotations

import numpy as np
import pytest

from fresco.decoder import TensorToMaskDecoder, channel_index, decode
from fresco.errors import FormatMismatch, ShapeMismatch
from fresco.tensor import Layout, Tensor


def _left_wall_scores(layout: Layout) -> Tensor:
    """4x4, 2 classes; class 1 scores 1.0 on the two left columns."""
    wall = np.zeros((4, 4), dtype=np.float32)
    wall[:, :2] = 1.0
    if layout is Layout.CHANNELS_LAST:
        data = np.stack([1.0 - wall, wall], axis=-1)[None]
    else:
        data = np.stack([1.0 - wall, wall], axis=0)[None]
    return Tensor(data, data.shape, layout)


@pytest.mark.parametrize("layout", [Layout.CHANNELS_LAST, Layout.CHANNELS_FIRST])
def test_two_class_scenario(layout: Layout) -> None:
    tensor = _left_wall_scores(layout)
    mask = decode(tensor, tensor.shape, layout, target_class_id=1, threshold=0.5)
    expected = np.zeros((4, 4), dtype=np.uint8)
    expected[:, :2] = 255
    assert (mask.width, mask.height) == (4, 4)
    assert np.array_equal(mask.data, expected)
    assert mask.class_id == 1


def test_threshold_is_inclusive() -> None:
    data = np.full((1, 2, 2, 2), 0.5, dtype=np.float32)
    mask = decode(Tensor(data), data.shape, Layout.CHANNELS_LAST, 1, 0.5)
    assert np.all(mask.data == 255)


def test_index_formulas() -> None:
    assert channel_index(1, 2, 1, 4, 3, 2, Layout.CHANNELS_LAST) == 2 * 4 * 2 + 1 * 2 + 1
    assert channel_index(1, 2, 1, 4, 3, 2, Layout.CHANNELS_FIRST) == 1 * 3 * 4 + 2 * 4 + 1


def test_flat_addressing_matches_decode() -> None:
    width, height, classes = 3, 2, 2
    for layout in (Layout.CHANNELS_LAST, Layout.CHANNELS_FIRST):
        flat = np.zeros(width * height * classes, dtype=np.float32)
        flat[channel_index(2, 1, 1, width, height, classes, layout)] = 1.0
        shape = (1, height, width, classes) if layout is Layout.CHANNELS_LAST else (1, classes, height, width)
        mask = decode(Tensor(flat, shape, layout), shape, layout, 1, 0.5)
        assert mask.data[1, 2] == 255
        assert int(np.count_nonzero(mask.data)) == 1


def test_single_channel_class_map() -> None:
    ids = np.array([[[0, 1], [2, 1]]], dtype=np.float32)
    mask = decode(Tensor(ids), ids.shape, Layout.CHANNELS_LAST, 1, 0.5)
    assert mask.data.tolist() == [[0, 255], [0, 255]]

    ids4 = ids.reshape(1, 2, 2, 1) + 0.2
    mask4 = decode(Tensor(ids4), ids4.shape, Layout.CHANNELS_LAST, 2, 0.5)
    assert mask4.data.tolist() == [[0, 0], [255, 0]]


def test_argmax_mode() -> None:
    scores = np.array([[[[0.1, 0.3, 0.6], [0.5, 0.4, 0.1]]]], dtype=np.float32)
    decoder = TensorToMaskDecoder(mode="argmax")
    mask = decoder.decode(Tensor(scores), scores.shape, Layout.CHANNELS_LAST, 1, 0.99)
    assert mask.data.tolist() == [[0, 0]]
    mask = decoder.decode(Tensor(scores), scores.shape, Layout.CHANNELS_LAST, 2, 0.99)
    assert mask.data.tolist() == [[255, 0]]


def test_short_shape_raises_with_diagnosis() -> None:
    tensor = Tensor(np.zeros(32, dtype=np.float32))
    with pytest.raises(ShapeMismatch) as info:
        decode(tensor, (32,), Layout.CHANNELS_LAST, 1, 0.5, expected_class_count=2)
    diag = info.value.diagnosis
    assert diag is not None and not diag.format_mismatch
    assert diag.contains(4, 4)


def test_shape_disagreeing_with_buffer() -> None:
    tensor = Tensor(np.zeros(32, dtype=np.float32))
    with pytest.raises(ShapeMismatch):
        decode(tensor, (1, 4, 4, 3), Layout.CHANNELS_LAST, 1, 0.5)


def test_target_outside_channels() -> None:
    tensor = _left_wall_scores(Layout.CHANNELS_LAST)
    with pytest.raises(ShapeMismatch):
        decode(tensor, tensor.shape, Layout.CHANNELS_LAST, 5, 0.5)


def test_non_divisible_buffer_raises_format_mismatch() -> None:
    tensor = Tensor(np.zeros(100, dtype=np.float32))
    with pytest.raises(FormatMismatch) as info:
        decode(tensor, (100,), Layout.CHANNELS_LAST, 1, 0.5, expected_class_count=7)
    assert info.value.diagnosis is not None
    assert info.value.diagnosis.format_mismatch


@pytest.mark.parametrize("scores,expected", [((0.9, 0.1), 0), ((0.1, 0.9), 255)])
def test_uniform_scores_give_uniform_mask(scores: tuple, expected: int) -> None:
    data = np.empty((1, 4, 4, 2), dtype=np.float32)
    data[...] = scores
    mask = decode(Tensor(data), data.shape, Layout.CHANNELS_LAST, 1, 0.5)
    assert mask.data.shape == (4, 4)
    assert np.all(mask.data == expected)
