"""Unit tests for the permutation and the reveal scheduler."""

import os
import zlib

import cv2
import numpy as np
import pytest

from reveal_core import (
    Ingest,
    MissingPrerequisiteError,
    PixelPermutation,
    RevealScheduler,
    RevealSettings,
    make_rng,
    seed_from_identity,
)


def make_source(width, height):
    """Every pixel non-black and distinct enough to tell apart from the canvas."""
    rng = np.random.default_rng(0)
    return rng.integers(1, 256, size=(height, width, 3), dtype=np.uint8)


def revealed_mask(frame):
    return frame.any(axis=2)


class TestSeeding:
    def test_seed_is_stable(self):
        """crc32 based, so it does not change between interpreter runs."""
        assert seed_from_identity("photo.jpg") == zlib.crc32(b"photo.jpg")
        assert seed_from_identity("photo.jpg") == seed_from_identity("photo.jpg")

    def test_different_identities_differ(self):
        assert seed_from_identity("a.jpg") != seed_from_identity("b.jpg")

    def test_same_identity_same_draws(self):
        a = make_rng("shot.png")
        b = make_rng("shot.png")
        assert a.random() == b.random()


class TestPixelPermutation:
    @pytest.mark.parametrize("width,height", [(1, 1), (4, 4), (7, 3), (64, 2)])
    def test_covers_every_coordinate_once(self, width, height):
        perm = PixelPermutation.generate(width, height, make_rng("x"))
        coords = list(perm)
        assert len(coords) == width * height
        assert set(coords) == {(x, y) for y in range(height) for x in range(width)}

    def test_deterministic_for_seed(self):
        a = PixelPermutation.generate(20, 10, make_rng("same"))
        b = PixelPermutation.generate(20, 10, make_rng("same"))
        assert np.array_equal(a.xs, b.xs)
        assert np.array_equal(a.ys, b.ys)

    def test_seed_changes_order(self):
        a = PixelPermutation.generate(20, 10, make_rng("one"))
        b = PixelPermutation.generate(20, 10, make_rng("two"))
        assert list(a) != list(b)

    def test_draws_continue_after_shuffle(self):
        """Following draws depend on the shuffle having consumed the generator."""
        rng = make_rng("seq")
        PixelPermutation.generate(8, 8, rng)
        after = rng.random()
        assert after != make_rng("seq").random()

    def test_rejects_empty_canvas(self):
        with pytest.raises(ValueError):
            PixelPermutation.generate(0, 4, make_rng("x"))


class TestSchedule:
    def test_linear_floor(self):
        assert RevealScheduler.schedule(10, 4) == [2, 5, 7, 10]

    def test_last_entry_is_total(self):
        for total in (0, 1, 5, 999, 1001):
            assert RevealScheduler.schedule(total, 7)[-1] == total

    def test_non_decreasing(self):
        targets = RevealScheduler.schedule(37, 300)
        assert all(b >= a for a, b in zip(targets, targets[1:]))

    def test_rejects_zero_frames(self):
        with pytest.raises(ValueError):
            RevealScheduler.schedule(10, 0)


class TestRevealScheduler:
    def render(self, width, height, total, frames, identity="seed"):
        source = make_source(width, height)
        canvas = Ingest.blank_canvas(source)
        perm = PixelPermutation.generate(width, height, make_rng(identity))
        scheduler = RevealScheduler()
        out = list(scheduler.render(source, canvas, perm, total, frames))
        return source, perm, scheduler, out

    def test_four_by_four_scenario(self):
        """16 pixels over 4 frames: 4 per frame, permutation order."""
        source, perm, _, frames = self.render(4, 4, 16, 4)
        assert len(frames) == 4

        first = revealed_mask(frames[0])
        expected = np.zeros((4, 4), dtype=bool)
        for x, y in list(perm)[:4]:
            expected[y, x] = True
        assert np.array_equal(first, expected)

        assert revealed_mask(frames[3]).all()
        assert np.array_equal(frames[3], source)

    def test_revealed_pixels_take_source_colors(self):
        source, _, _, frames = self.render(6, 4, 10, 3)
        mask = revealed_mask(frames[-1])
        assert np.array_equal(frames[-1][mask], source[mask])

    def test_monotone_reveal(self):
        _, _, _, frames = self.render(10, 6, 45, 13)
        masks = [revealed_mask(f) for f in frames]
        for earlier, later in zip(masks, masks[1:]):
            assert not (earlier & ~later).any()

    def test_conservation(self):
        _, _, scheduler, frames = self.render(10, 6, 45, 13)
        assert revealed_mask(frames[-1]).sum() == 45
        assert scheduler.state.pixels_revealed_so_far == 45
        assert scheduler.state.current_frame_index == 12

    def test_clamped_to_canvas(self):
        """Asking for more than the canvas holds reveals the canvas, no more."""
        source, _, scheduler, frames = self.render(4, 2, 1000, 5)
        assert scheduler.state.pixels_revealed_so_far == 8
        assert np.array_equal(frames[-1], source)

    def test_zero_reveal_keeps_background(self):
        _, _, scheduler, frames = self.render(4, 4, 0, 3)
        assert all(not f.any() for f in frames)
        assert scheduler.state.pixels_revealed_so_far == 0

    def test_fewer_pixels_than_frames(self):
        """Some frames reveal nothing, but every frame is still emitted."""
        _, _, _, frames = self.render(4, 4, 3, 10)
        counts = [int(revealed_mask(f).sum()) for f in frames]
        assert len(frames) == 10
        assert counts == RevealScheduler.schedule(3, 10)

    def test_frames_are_independent_copies(self):
        _, _, _, frames = self.render(4, 4, 16, 4)
        assert not revealed_mask(frames[0]).all()

    def test_background_color(self):
        source = make_source(4, 4)
        canvas = Ingest.blank_canvas(source, (10, 20, 30))
        perm = PixelPermutation.generate(4, 4, make_rng("bg"))
        first = next(RevealScheduler().render(source, canvas, perm, 0, 2))
        assert (first == np.array([10, 20, 30], dtype=np.uint8)).all()

    def test_write_frames(self, tmp_path):
        _, _, _, frames = self.render(4, 4, 16, 4)
        out_dir = tmp_path / "frames"
        count = RevealScheduler.write_frames(iter(frames), str(out_dir))
        assert count == 4
        assert sorted(os.listdir(out_dir)) == [f"frame_{i:04d}.png" for i in range(4)]
        assert np.array_equal(cv2.imread(str(out_dir / "frame_0003.png")), frames[3])


class TestIngest:
    def test_crops_to_even(self, tmp_path):
        path = tmp_path / "odd.png"
        cv2.imwrite(str(path), make_source(5, 7))
        source = Ingest.from_image(str(path))
        assert source.shape == (6, 4, 3)
        assert not source.flags.writeable

    def test_missing_image(self, tmp_path):
        with pytest.raises(MissingPrerequisiteError):
            Ingest.from_image(str(tmp_path / "nope.png"))

    def test_undecodable_image(self, tmp_path):
        path = tmp_path / "broken.png"
        path.write_bytes(b"not a png")
        with pytest.raises(MissingPrerequisiteError):
            Ingest.from_image(str(path))


class TestRevealSettings:
    def test_derived_values(self):
        s = RevealSettings("img/photo.jpg", duration_seconds=10, fps=30, hold_seconds=30, work_dir="run")
        assert s.total_frames == 300
        assert s.output_duration == 40
        assert s.state_file == os.path.join("run", "photo.jpg.state")
        assert s.frames_dir == os.path.join("run", "frames")

    def test_frames_rounded_not_truncated(self):
        assert RevealSettings("photo.jpg", duration_seconds=0.57, fps=100).total_frames == 57

    def test_partial_frame_rejected(self):
        """10.5s at 25fps would make the video shorter than the audio."""
        with pytest.raises(ValueError):
            RevealSettings("photo.jpg", duration_seconds=10.5, fps=25)

    @pytest.mark.parametrize("kwargs", [
        {"fps": 0},
        {"duration_seconds": -1},
        {"hold_seconds": -5},
        {"audio_backend": "wave"},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RevealSettings("photo.jpg", **kwargs)
