import os
import zlib

import cv2
import numpy as np

# ==========================================
# 1. CONFIGURATION
# ==========================================
class RevealSettings:
    """Central place for reveal/video/audio settings."""
    def __init__(self, source_image, followers_this_session=1, pixels_per_follower=5000,
                 duration_seconds=10, fps=30, max_blips=40, hold_seconds=30,
                 tone_duration=0.2, blip_exponent=20, frequencies=(1046, 1396, 2093),
                 sample_rate=44100, background=(0, 0, 0), ffmpeg="ffmpeg", ffprobe="ffprobe",
                 font_path=None, work_dir=".", output_name="output.mp4", audio_backend="ffmpeg"):
        self.source_image = source_image
        self.followers_this_session = followers_this_session
        self.pixels_per_follower = pixels_per_follower   # Pixels uncovered per follower

        self.duration_seconds = duration_seconds         # Reveal length (before the hold)
        self.fps = fps
        self.hold_seconds = hold_seconds                 # Freeze on the last frame

        self.max_blips = max_blips                       # Caps the number of chimes per track
        self.tone_duration = tone_duration
        self.blip_exponent = blip_exponent               # Steepness of the decay envelope
        self.frequencies = tuple(frequencies)            # C6, F6, C7
        self.sample_rate = sample_rate
        self.background = tuple(background)              # BGR

        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.font_path = font_path
        self.work_dir = work_dir
        self.output_name = output_name
        self.audio_backend = audio_backend

        if fps <= 0 or duration_seconds <= 0:
            raise ValueError("fps and duration_seconds must be positive")
        if hold_seconds < 0:
            raise ValueError("hold_seconds cannot be negative")
        if audio_backend not in ("ffmpeg", "numpy"):
            raise ValueError(f"Unknown audio backend: {audio_backend}")

        # Derived values
        exact_frames = duration_seconds * fps
        self.total_frames = int(round(exact_frames))
        if abs(exact_frames - self.total_frames) > 1e-6:
            raise ValueError(f"duration_seconds * fps must be a whole number of frames, got {exact_frames}")
        self.output_duration = duration_seconds + hold_seconds

    def path(self, name):
        return os.path.join(self.work_dir, name)

    @property
    def frames_dir(self):
        return self.path("frames")

    @property
    def state_file(self):
        """Counter file lives next to the run, named after the source image."""
        return self.path(os.path.basename(self.source_image) + ".state")

# ==========================================
# 2. SEEDING
# ==========================================
def seed_from_identity(identity):
    """Stable 32-bit seed for a string. hash() is salted per process, crc32 is not."""
    return zlib.crc32(str(identity).encode("utf-8"))


def make_rng(identity):
    """The single generator shared by the shuffle and the chime draws, in that order."""
    return np.random.default_rng(seed_from_identity(identity))

# ==========================================
# 3. INGEST (SOURCE IMAGE & CANVAS)
# ==========================================
class MissingPrerequisiteError(Exception):
    """Something the run needs before any work can start is absent."""


class Ingest:
    """Factory methods for the source image and the blank canvas."""

    @staticmethod
    def even_size(width, height):
        # libx264 + yuv420p need even dimensions
        return width - width % 2, height - height % 2

    @classmethod
    def from_image(cls, path):
        """Decodes the still and crops it to even dimensions."""
        if not os.path.exists(path):
            raise MissingPrerequisiteError(f"Source image not found at '{path}'")

        image = cv2.imread(path, cv2.IMREAD_COLOR)
        if image is None:
            raise MissingPrerequisiteError(f"Failed to load source image '{path}'. It might be corrupted or in use.")

        height, width = image.shape[:2]
        even_w, even_h = cls.even_size(width, height)
        if even_w < 2 or even_h < 2:
            raise MissingPrerequisiteError(f"Source image '{path}' is too small ({width}x{height})")
        if (even_w, even_h) != (width, height):
            print(f"[Ingest] Image dimensions adjusted for video encoding: {width}x{height} -> {even_w}x{even_h}")

        source = np.ascontiguousarray(image[:even_h, :even_w])
        source.setflags(write=False)
        return source

    @staticmethod
    def blank_canvas(source, background=(0, 0, 0)):
        canvas = np.empty_like(source)
        canvas[:] = np.asarray(background, dtype=source.dtype)
        return canvas

# ==========================================
# 4. PERMUTATION
# ==========================================
class PixelPermutation:
    """
    Shuffled visiting order of every canvas coordinate.
    xs[i], ys[i] is the i-th pixel to be revealed.
    """
    def __init__(self, xs, ys, width, height):
        self.xs = xs
        self.ys = ys
        self.width = width
        self.height = height

    def __len__(self):
        return len(self.xs)

    def __iter__(self):
        return zip(self.xs.tolist(), self.ys.tolist())

    @classmethod
    def generate(cls, width, height, rng):
        """
        Row-major indices put through a Fisher-Yates shuffle.
        Generator.permutation consumes the draws in a fixed order, so the
        same seed always gives the same sequence.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid canvas size {width}x{height}")

        order = rng.permutation(width * height)
        ys, xs = np.divmod(order, width)
        return cls(xs, ys, width, height)

# ==========================================
# 5. SCHEDULER
# ==========================================
class RevealState:
    def __init__(self, total_pixels_to_reveal):
        self.pixels_revealed_so_far = 0
        self.total_pixels_to_reveal = total_pixels_to_reveal
        self.current_frame_index = 0


class RevealScheduler:
    """Uncovers pixels of the source on the canvas, linearly in time."""

    @staticmethod
    def schedule(total_pixels_to_reveal, total_frames):
        """Cumulative revealed-pixel count after each frame."""
        if total_frames <= 0:
            raise ValueError("total_frames must be positive")
        total = max(0, total_pixels_to_reveal)
        # Integer floor keeps it exact; the last entry is always `total`
        return [(f + 1) * total // total_frames for f in range(total_frames)]

    def __init__(self):
        self.state = None

    def render(self, source, canvas, permutation, total_pixels_to_reveal, total_frames):
        """Yields a copy of the canvas for every frame."""
        total = min(max(0, total_pixels_to_reveal), len(permutation))
        targets = self.schedule(total, total_frames)
        self.state = state = RevealState(total)

        for frame_index, target in enumerate(targets):
            state.current_frame_index = frame_index
            if frame_index == total_frames - 1:
                target = total  # Whatever is left goes on the final frame

            count = target - state.pixels_revealed_so_far
            if count > 0:
                start = state.pixels_revealed_so_far
                xs = permutation.xs[start:start + count]
                ys = permutation.ys[start:start + count]
                canvas[ys, xs] = source[ys, xs]
                state.pixels_revealed_so_far += count

            yield canvas.copy()

    @staticmethod
    def write_frames(frames, directory, total_frames=None):
        """Saves frames as frame_0000.png, frame_0001.png, ... Returns the count."""
        os.makedirs(directory, exist_ok=True)
        count = 0
        for frame_index, frame in enumerate(frames):
            frame_path = os.path.join(directory, f"frame_{frame_index:04d}.png")
            if not cv2.imwrite(frame_path, frame):
                raise IOError(f"Could not write frame: {frame_path}")
            count += 1
            if total_frames:
                print(f"\r[Reveal] Generating frame {count} of {total_frames}... ", end="", flush=True)
        if total_frames:
            print()
        return count
