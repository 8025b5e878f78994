import numpy as np
import pytest

import slscan


class TestGrayCode:
    """Tests for Gray code encoding and decoding."""

    def setup_method(self):
        self.gc = slscan.GrayCode()
        self.proj_wh = (128, 64)
        self.patterns = self.gc.encode(self.proj_wh)

    def _captures(self, patterns, low=10.0, high=210.0):
        return [low + (high - low) * (p[..., 0] / 255.0) for p in patterns]

    def test_num_patterns(self):
        assert self.gc.num_patterns((1024, 768)) == 2 * (10 + 10) + 2
        assert self.gc.num_patterns((1024, 768), "columns") == 2 * 10 + 2
        assert self.gc.num_patterns((1024, 768), "rows") == 2 * 10 + 2
        assert self.gc.num_patterns((1000, 700)) == 42
        assert len(self.patterns) == self.gc.num_patterns(self.proj_wh)

    def test_encode_layout(self):
        w, h = self.proj_wh
        assert self.patterns.shape == (2 * (7 + 6) + 2, h, w, 1)
        assert self.patterns.dtype == np.uint8
        assert np.all(self.patterns[0] == 255)
        assert np.all(self.patterns[1] == 0)
        bits = self.patterns[2:]
        # every direct pattern is followed by its inverse
        assert np.all(bits[0::2].astype(int) + bits[1::2] == 255)
        # column patterns are vertical stripes, row patterns horizontal
        cols = bits[: 2 * 7]
        rows = bits[2 * 7 :]
        assert np.all(cols == cols[:, :1, :, :])
        assert np.all(rows == rows[:, :, :1, :])
        # the most significant column bit splits the projector in two halves
        assert np.all(cols[0, :, : w // 2] == 0)
        assert np.all(cols[0, :, w // 2 :] == 255)

    def test_encode1d_is_gray(self):
        codes = self.gc.encode1d(16) // 255
        values = np.sum(codes * (1 << np.arange(3, -1, -1))[:, None], axis=0)
        expected = np.arange(16) ^ (np.arange(16) >> 1)
        assert np.array_equal(values, expected)
        # neighbours differ by exactly one bit
        assert np.all(np.sum(codes[:, 1:] != codes[:, :-1], axis=0) == 1)

    def test_decode1d(self):
        for n in range(32):
            g = n ^ (n >> 1)
            bits = np.array([(g >> k) & 1 for k in range(4, -1, -1)], dtype=bool)
            assert self.gc.decode1d(bits[:, None, None])[0, 0] == n

    def test_roundtrip_noiseless(self):
        corr = self.gc.decode(self._captures(self.patterns), self.proj_wh)
        w, h = self.proj_wh
        x, y = np.meshgrid(np.arange(w), np.arange(h))
        assert corr.axes == "both"
        assert np.all(corr.valid)
        assert np.all(corr.reliable)
        assert np.array_equal(corr.col_code, x)
        assert np.array_equal(corr.row_code, y)

    def test_roundtrip_every_code(self):
        proj_wh = (1024, 2)
        patterns = self.gc.encode(proj_wh, axes="columns")
        corr = self.gc.decode(self._captures(patterns), proj_wh, axes="columns")
        assert np.array_equal(corr.col_code[0], np.arange(1024))
        assert np.all(corr.row_code == -1)
        assert not corr.row_valid.any()

    def test_roundtrip_with_noise(self):
        rng = np.random.default_rng(0)
        beta = 40
        captures = [
            c + rng.uniform(-beta / 2 + 1, beta / 2 - 1, size=c.shape)
            for c in self._captures(self.patterns)
        ]
        corr = self.gc.decode(captures, self.proj_wh, brightness_threshold=beta)
        w, h = self.proj_wh
        x, y = np.meshgrid(np.arange(w), np.arange(h))
        assert np.all(corr.reliable)
        assert np.array_equal(corr.col_code, x)
        assert np.array_equal(corr.row_code, y)

    def test_color_captures(self):
        captures = [np.repeat(c[..., None], 3, axis=-1).astype(np.uint8) for c in self._captures(self.patterns)]
        corr = self.gc.decode(captures, self.proj_wh)
        assert corr.light_image.shape == (64, 128, 3)
        assert np.all(corr.reliable)

    def test_codes_beyond_resolution_are_invalid(self):
        # a 100 pixel wide projector needs the same 7 bits as a 128 pixel wide one
        captures = self._captures(self.patterns)
        corr = self.gc.decode(captures, (100, 64))
        assert np.all(corr.col_valid[:, :100])
        assert not corr.col_valid[:, 100:].any()
        assert np.all(corr.col_code[:, 100:] == -1)
        assert np.all(corr.row_valid)
        assert np.array_equal(corr.valid, np.ones((64, 128), dtype=bool))
        assert not corr.reliable[:, 100:].any()

    def test_mask_conservatism(self):
        captures = self._captures(self.patterns)
        # a shadowed region sees ambient light only
        for c in captures:
            c[10:20, 30:60] = 10.0
        # a low contrast region cannot tell a pattern from its inverse
        for c in captures[2:]:
            c[40:50, 0:20] = 0.05 * c[40:50, 0:20] + 100
        # a dark region has contrast but is below the brightness threshold
        for c in captures:
            c[0:5, 100:110] *= 0.15
        corr = self.gc.decode(captures, self.proj_wh)
        for region in (np.s_[10:20, 30:60], np.s_[0:5, 100:110]):
            assert not corr.valid[region].any()
            assert np.all(corr.col_code[region] == -1)
            assert np.all(corr.row_code[region] == -1)
        assert not corr.reliable[40:50, 0:20].any()
        assert corr.valid.sum() == 128 * 64 - 10 * 30 - 5 * 10 - 10 * 20

    def test_bit_rules(self):
        direct = np.array([[100.0, 100.0, 100.0, 30.0, 70.0]])
        inverse = np.array([[50.0, 85.0, 150.0, 5.0, 100.0]])
        bit, valid = self.gc.binarize(direct, inverse, contrast_threshold=20, brightness_threshold=40)
        assert bit.tolist() == [[True, False, False, True, False]]
        # ambiguous, too dark and a confident zero
        assert valid.tolist() == [[True, False, True, False, True]]

    def test_all_invalid_raises(self):
        captures = [np.zeros((64, 128)) for _ in self.patterns]
        with pytest.raises(slscan.DecodeAllInvalid):
            self.gc.decode(captures, self.proj_wh)

    def test_wrong_number_of_captures(self):
        with pytest.raises(ValueError):
            self.gc.decode(self._captures(self.patterns)[:-1], self.proj_wh)
        with pytest.raises(ValueError):
            self.gc.encode(self.proj_wh, axes="diagonal")

    def test_rows_only(self):
        patterns = self.gc.encode(self.proj_wh, axes="rows")
        corr = self.gc.decode(self._captures(patterns), self.proj_wh, axes="rows")
        assert np.array_equal(corr.valid, corr.row_valid)
        assert np.array_equal(corr.row_code[:, 0], np.arange(64))
        with pytest.raises(ValueError):
            corr.correspondences()

    def test_correspondences_and_invalidate(self):
        corr = self.gc.decode(self._captures(self.patterns), self.proj_wh)
        cam_pts, proj_pts = corr.correspondences()
        assert cam_pts.shape == (128 * 64, 2)
        assert np.array_equal(cam_pts, proj_pts)
        mask = np.zeros((64, 128), dtype=bool)
        mask[5, 7] = True
        filtered = corr.invalidate(mask)
        assert not filtered.valid[5, 7]
        assert filtered.col_code[5, 7] == -1
        assert corr.valid[5, 7]
        assert filtered.valid.sum() == corr.valid.sum() - 1

    def test_decode_saves_codes(self, tmp_path):
        self.gc.decode(self._captures(self.patterns), self.proj_wh, output_dir=tmp_path, debug=True)
        col_code = np.load(tmp_path / "col_code.npy")
        assert col_code.shape == (64, 128)
        assert (tmp_path / "correspondence_map.png").is_file()
        assert (tmp_path / "valid" / "col_valid.png").is_file()
