import numpy as np
import pytest

from blur_guard.crop import crop_face, face_crop_box, obscure
from blur_guard.errors import InvalidInputError

from conftest import face, make_image


class TestFaceCropBox:
    def test_padding_is_fraction_of_width(self):
        box = face_crop_box(face(0, 40, 40, 60, 70), (100, 100, 3), 0.1)
        assert box == (38, 38, 62, 72)

    def test_zero_padding(self):
        assert face_crop_box(face(0, 10, 20, 30, 40), (100, 100, 3), 0.0) == (
            10,
            20,
            30,
            40,
        )

    def test_clamped_to_image(self):
        box = face_crop_box(face(0, -5, 90, 50, 130), (100, 80, 3), 0.2)
        assert box == (0, 79, 61, 100)

    def test_face_outside_image_raises(self):
        with pytest.raises(InvalidInputError):
            face_crop_box(face(0, 200, 200, 220, 220), (100, 100, 3), 0.1)

    def test_degenerate_box_raises(self):
        with pytest.raises(InvalidInputError):
            face_crop_box(face(0, 10, 10, 10, 30), (100, 100, 3), 0.1)

    def test_crop_face_shape(self):
        image = make_image(width=100, height=80)
        crop = crop_face(image, face(0, 10, 10, 30, 50), 0.0)
        assert crop.shape == (40, 20, 3)


class TestObscure:
    def test_keeps_size_and_darkens(self):
        image = make_image(width=64, height=48, value=200)
        out = obscure(image)
        assert out.shape == (48, 64, 3)
        assert out.dtype == np.uint8
        assert out.mean() < image.mean()

    def test_grayscale_input_becomes_rgb(self):
        image = np.full((10, 12), 255, dtype=np.uint8)
        assert obscure(image).shape == (10, 12, 3)

    def test_detail_is_removed(self):
        image = np.zeros((40, 40, 3), dtype=np.uint8)
        image[:, ::2] = 255
        out = obscure(image, radius=10)
        assert out.std() < image.std() / 4
