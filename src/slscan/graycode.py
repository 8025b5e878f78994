import logging
from pathlib import Path

import numpy as np

from .config import AXES
from .core import color_to_gray, to_8b, to_rgb
from .errors import DecodeAllInvalid
from .slscan_io import save_image, save_images

logger = logging.getLogger(__name__)


class CorrespondenceMap:
    """
    dense camera -> projector correspondences produced by GrayCode.decode.
    codes are (cam_h, cam_w) int64 images holding the projector column / row seen by each camera pixel, -1 where undecoded.
    """

    def __init__(self, col_code, row_code, col_valid, row_valid, axes, light_image=None):
        if axes not in AXES:
            raise ValueError("axes must be one of {}".format(AXES))
        self.col_code = col_code
        self.row_code = row_code
        self.col_valid = col_valid
        self.row_valid = row_valid
        self.axes = axes
        self.light_image = light_image

    @property
    def cam_wh(self):
        return (self.col_code.shape[1], self.col_code.shape[0])

    @property
    def valid(self):
        """pixels with at least one usable coded axis"""
        if self.axes == "columns":
            return self.col_valid
        if self.axes == "rows":
            return self.row_valid
        return self.col_valid | self.row_valid

    @property
    def reliable(self):
        """pixels where every coded axis was decoded"""
        if self.axes == "columns":
            return self.col_valid
        if self.axes == "rows":
            return self.row_valid
        return self.col_valid & self.row_valid

    def correspondences(self):
        """
        returns the reliable camera <-> projector pixel pairs of a map coded on both axes
        :return: (n, 2) camera pixels (u, v) and (n, 2) projector pixels (x, y), float64
        """
        if self.axes != "both":
            raise ValueError("point correspondences require both axes to be coded")
        v, u = np.nonzero(self.reliable)
        cam_pts = np.stack((u, v), axis=-1).astype(np.float64)
        proj_pts = np.stack((self.col_code[v, u], self.row_code[v, u]), axis=-1).astype(
            np.float64
        )
        return cam_pts, proj_pts

    def invalidate(self, mask):
        """
        returns a copy of this map where pixels in mask are marked invalid on every axis
        """
        col_valid = self.col_valid & ~mask
        row_valid = self.row_valid & ~mask
        col_code = np.where(col_valid, self.col_code, -1)
        row_code = np.where(row_valid, self.row_code, -1)
        return CorrespondenceMap(
            col_code, row_code, col_valid, row_valid, self.axes, self.light_image
        )


class GrayCode:
    """
    a class that handles encoding and decoding binary graycode patterns.
    a sequence starts with an all-white and an all-black frame, followed by a (pattern, inverse) pair per bit,
    columns first (most significant bit first) and then rows.
    """

    def num_bits(self, length):
        """how many bits are needed to represent length"""
        return int(np.ceil(np.log2(length)))

    def num_patterns(self, proj_wh, axes="both"):
        width, height = proj_wh
        n = 0
        if axes in ("columns", "both"):
            n += self.num_bits(width)
        if axes in ("rows", "both"):
            n += self.num_bits(height)
        return 2 * n + 2

    def encode1d(self, length):
        total_bits = self.num_bits(length)
        x = np.arange(length, dtype=np.uint64)  # [0, 1, 2, ..., length-1]
        gray = x ^ (x >> np.uint64(1))  # Gray code of each x
        shifts = np.arange(total_bits - 1, -1, -1, dtype=np.uint64)[
            :, None
        ]  # [[MSB], ..., [LSB]]
        bits = ((gray >> shifts) & np.uint64(1)).astype(
            np.uint8
        )  # represent as binary with shape (total_bits, length) -> a binary number per pixel
        return bits * 255

    def encode(self, proj_wh, axes="both"):
        """
        encode projector's width and height into gray code patterns
        :param proj_wh: projector's (width, height) in pixels as a tuple
        :param axes: "columns", "rows" or "both", which projector coordinates to encode
        :return: numpy array of shape (total_images, height, width, 1) where total_images is num_patterns(proj_wh, axes)
        """
        if axes not in AXES:
            raise ValueError("axes must be one of {}".format(AXES))
        width, height = proj_wh
        sequence = [
            np.full((height, width), 255, dtype=np.uint8),
            np.zeros((height, width), dtype=np.uint8),
        ]
        if axes in ("columns", "both"):
            codes_width_1d = self.encode1d(width)[:, None, :]
            for code in codes_width_1d.repeat(height, axis=1):
                sequence += [code, 255 - code]
        if axes in ("rows", "both"):
            codes_height_1d = self.encode1d(height)[:, :, None]
            for code in codes_height_1d.repeat(width, axis=2):
                sequence += [code, 255 - code]
        return np.stack(sequence, axis=0)[..., None]

    def binarize(self, direct, inverse, contrast_threshold=20, brightness_threshold=40):
        """
        binarize a (direct, inverse) pair of captures
        :param direct: (height, width) float image captured while the pattern was projected
        :param inverse: (height, width) float image captured while the inverted pattern was projected
        :param contrast_threshold: a bit is decided only if the pair differs by more than this
        :param brightness_threshold: a bit is decided only if the brighter capture exceeds this
        :return: a boolean bit image and a boolean image marking where the bit could be decided
        """
        diff = direct - inverse
        bit = diff > contrast_threshold
        valid = (np.abs(diff) > contrast_threshold) & (
            np.maximum(direct, inverse) > brightness_threshold
        )
        return bit, valid

    def decode1d(self, gc_imgs):
        # gc_imgs: shape (n, h, w), are boolean images
        n = gc_imgs.shape[0]
        # gray -> binary via cumulative xor along bit axis (MSB->LSB)
        binary = np.bitwise_xor.accumulate(gc_imgs, axis=0)
        # build 1D weights and broadcast (MSB weight = 2**(n-1))
        weights = (1 << np.arange(n - 1, -1, -1, dtype=np.int64))[:, None, None]
        # multiply and sum to get final index image
        return np.sum(binary * weights, axis=0)  # shape (h, w)

    def _decode_axis(self, gray_pairs, length, shadow_ok, contrast_threshold, brightness_threshold):
        bits = []
        valid = shadow_ok.copy()
        for direct, inverse in gray_pairs:
            bit, bit_valid = self.binarize(
                direct, inverse, contrast_threshold, brightness_threshold
            )
            bits.append(bit)
            valid &= bit_valid
        code = self.decode1d(np.stack(bits, axis=0))
        valid &= code < length
        code[~valid] = -1
        return code, valid

    def decode(
        self,
        captures,
        proj_wh,
        axes="both",
        contrast_threshold=20,
        brightness_threshold=40,
        output_dir=None,
        debug=False,
    ):
        """
        decodes a sequence of captures of the patterns produced by encode (in the same order)
        :param captures: a sequence of (height, width) or (height, width, c) uint8 captures, or an array of them
        :param proj_wh: projector's (width, height) in pixels as a tuple
        :param axes: the axes the sequence encodes
        :param contrast_threshold: minimal difference between a pattern and its inverse for a bit to be trusted
        :param brightness_threshold: minimal brightness of a (pattern, inverse) pair for a bit to be trusted
        :param output_dir: if not None, saves the decoded codes to this directory
        :param debug: if True, also saves the binarized captures and a visualization of the map (R=column, G=row)
        :return: a CorrespondenceMap
        """
        if axes not in AXES:
            raise ValueError("axes must be one of {}".format(AXES))
        expected = self.num_patterns(proj_wh, axes)
        if len(captures) != expected:
            raise ValueError("captures must have length of {}".format(expected))
        light_image = to_rgb(np.asarray(captures[0]))
        white = color_to_gray(np.asarray(captures[0]))
        black = color_to_gray(np.asarray(captures[1]))
        if white.ndim != 2:
            raise ValueError("captures must be (height, width) or (height, width, c) images")
        lit, shadow_ok = self.binarize(
            white, black, contrast_threshold, brightness_threshold
        )
        shadow_ok &= lit

        def pairs(start, count):
            for i in range(start, start + 2 * count, 2):
                yield color_to_gray(np.asarray(captures[i])), color_to_gray(
                    np.asarray(captures[i + 1])
                )

        width, height = proj_wh
        cam_shape = white.shape
        col_code = np.full(cam_shape, -1, dtype=np.int64)
        row_code = np.full(cam_shape, -1, dtype=np.int64)
        col_valid = np.zeros(cam_shape, dtype=bool)
        row_valid = np.zeros(cam_shape, dtype=bool)
        start = 2
        if axes in ("columns", "both"):
            n = self.num_bits(width)
            col_code, col_valid = self._decode_axis(
                pairs(start, n), width, shadow_ok, contrast_threshold, brightness_threshold
            )
            start += 2 * n
        if axes in ("rows", "both"):
            n = self.num_bits(height)
            row_code, row_valid = self._decode_axis(
                pairs(start, n), height, shadow_ok, contrast_threshold, brightness_threshold
            )
        corr = CorrespondenceMap(col_code, row_code, col_valid, row_valid, axes, light_image)
        n_valid = int(corr.valid.sum())
        logger.debug(
            "decoded %d / %d camera pixels (%d reliable)",
            n_valid,
            corr.valid.size,
            int(corr.reliable.sum()),
        )
        if output_dir is not None:
            self._save_debug(corr, proj_wh, Path(output_dir), debug)
        if n_valid == 0:
            raise DecodeAllInvalid("no camera pixel could be decoded")
        return corr

    def _save_debug(self, corr, proj_wh, output_dir, debug):
        output_dir.mkdir(parents=True, exist_ok=True)
        np.save(Path(output_dir, "col_code.npy"), corr.col_code)
        np.save(Path(output_dir, "row_code.npy"), corr.row_code)
        if debug:
            save_images(
                np.stack((corr.col_valid, corr.row_valid), axis=0)[..., None],
                Path(output_dir, "valid"),
                file_names=["col_valid", "row_valid"],
            )
            composed = np.zeros((*corr.col_code.shape, 3), dtype=np.float32)
            composed[..., 0] = np.where(corr.col_valid, corr.col_code / proj_wh[0], 0)
            composed[..., 1] = np.where(corr.row_valid, corr.row_code / proj_wh[1], 0)
            save_image(to_8b(composed), Path(output_dir, "correspondence_map.png"))
