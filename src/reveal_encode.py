import json
import os
import shutil
import subprocess

from reveal_audio import fmt
from reveal_core import MissingPrerequisiteError

FRAME_PATTERN = "frame_%04d.png"


class EncoderError(Exception):
    """ffmpeg exited non-zero. Carries everything needed to reproduce it."""
    def __init__(self, task, cmd, returncode, output):
        super().__init__(f"FFmpeg failed to {task} (exit code {returncode})")
        self.task = task
        self.cmd = cmd
        self.returncode = returncode
        self.output = output

    def report(self):
        return "\n".join([
            f"[Error] {self}.",
            "FFmpeg arguments: " + " ".join(self.cmd),
            "FFmpeg output:",
            self.output or "",
        ])

# ==========================================
# OVERLAY (PRECOMPUTED COUNTERS)
# ==========================================
class OverlayFrame:
    def __init__(self, index, followers, pixels):
        self.index = index
        self.followers = followers
        self.pixels = pixels

    def __repr__(self):
        return f"OverlayFrame({self.index}, followers={self.followers}, pixels={self.pixels})"


def escape_drawtext(text):
    text = text.replace("\\", "\\\\")
    text = text.replace(":", "\\:")
    text = text.replace("'", "\\'")
    text = text.replace("%", "\\%")
    return text


def escape_path(path):
    """Path for use inside a filter argument."""
    text = str(path).replace("\\", "/")
    text = text.replace(":", "\\:")
    # Quotes can't be escaped inside quotes: close, escape for both the graph
    # and the option parser, reopen
    text = text.replace("'", "'\\\\\\''")
    return text


class OverlayTrack:
    """
    The two on-screen counters, one value per frame, computed here rather than
    by drawtext expressions.
    """
    FOLLOWER_LABEL = "New Followers: {}"
    PIXEL_LABEL = "Total Pixels revealed: {}"

    def __init__(self, frames, fps):
        self.frames = frames
        self.fps = fps

    @classmethod
    def build(cls, followers_this_session, pixel_targets, fps):
        """pixel_targets is RevealScheduler.schedule(...) so both counters match the frames."""
        total_frames = len(pixel_targets)
        frames = []
        for n, pixels in enumerate(pixel_targets):
            # Ramp reaches F slightly before the end, then holds
            ramp = int((n + 1) * (2 * followers_this_session + 1) // (2 * total_frames))
            followers = min(followers_this_session, ramp)
            frames.append(OverlayFrame(n, max(0, followers), pixels))
        return cls(frames, fps)

    def labels(self, frame):
        """Escaped (followers, pixels) texts for one frame."""
        return (escape_drawtext(self.FOLLOWER_LABEL.format(frame.followers)),
                escape_drawtext(self.PIXEL_LABEL.format(frame.pixels)))

    def commands(self):
        """sendcmd lines; a counter is only re-initialised when its value changes."""
        lines = []
        last_followers = last_pixels = None
        for frame in self.frames:
            stamp = f"{frame.index / self.fps:.6f}"
            follower_text, pixel_text = self.labels(frame)
            if frame.followers != last_followers:
                lines.append(f"{stamp} drawtext@followers reinit 'text={follower_text}';")
                last_followers = frame.followers
            if frame.pixels != last_pixels:
                lines.append(f"{stamp} drawtext@pixels reinit 'text={pixel_text}';")
                last_pixels = frame.pixels
        return lines

    def write(self, path):
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(self.commands()) + "\n")
        return path

# ==========================================
# GATEWAY
# ==========================================
class FFmpegGateway:
    """Builds and runs the three ffmpeg jobs: audio, frames -> video, compose."""

    def __init__(self, ffmpeg="ffmpeg", ffprobe="ffprobe"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe

    def check_available(self):
        """Resolves the binary; a bare name is looked up on PATH."""
        if os.path.exists(self.ffmpeg):
            return self.ffmpeg
        found = shutil.which(self.ffmpeg)
        if not found:
            raise MissingPrerequisiteError(f"FFmpeg not found at '{self.ffmpeg}'. Please check the path.")
        self.ffmpeg = found
        return found

    def run(self, cmd, task):
        print(f"[Encoder] {task}...")
        p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        if p.returncode != 0:
            raise EncoderError(task, cmd, p.returncode, p.stdout)
        return p

    # --- Job A ---
    def audio_cmd(self, graph, output_path):
        return [
            self.ffmpeg, "-v", "error",
            "-filter_complex", graph.to_filter_complex(),
            "-map", "[a]",
            "-ar", str(graph.sample_rate), "-ac", "1",
            "-t", fmt(graph.duration),
            "-y", str(output_path),
        ]

    def make_audio(self, graph, output_path):
        task = "generate silent audio" if graph.silent else "generate multi-tone audio track"
        self.run(self.audio_cmd(graph, output_path), task)
        return output_path

    # --- Job B ---
    def video_cmd(self, frames_dir, fps, output_path):
        return [
            self.ffmpeg, "-v", "error",
            "-framerate", str(fps),
            "-i", os.path.join(str(frames_dir), FRAME_PATTERN),
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-an",
            "-y", str(output_path),
        ]

    def make_video(self, frames_dir, fps, output_path):
        self.run(self.video_cmd(frames_dir, fps, output_path), "encode the frame sequence")
        return output_path

    # --- Job C ---
    def overlay_filter(self, overlay, font_path, commands_path):
        font = escape_path(font_path)
        follower_text, pixel_text = overlay.labels(overlay.frames[0])
        style = "fontsize=48:fontcolor=white:x=(w-text_w)/2:box=1:boxcolor=black@0.5:boxborderw=10"
        return (
            f"sendcmd=f='{escape_path(commands_path)}',"
            f"drawtext@followers=fontfile='{font}':text='{follower_text}':{style}:y=20,"
            f"drawtext@pixels=fontfile='{font}':text='{pixel_text}':{style}:y=80"
        )

    @staticmethod
    def has_overlay(overlay, font_path, commands_path):
        return bool(overlay is not None and overlay.frames and font_path and commands_path)

    def compose_cmd(self, video_path, audio_path, output_path, video_duration, hold_seconds,
                    overlay=None, font_path=None, commands_path=None):
        video_filters = []
        if self.has_overlay(overlay, font_path, commands_path):
            video_filters.append(self.overlay_filter(overlay, font_path, commands_path))
        video_filters.append(f"tpad=stop_mode=clone:stop_duration={fmt(hold_seconds)}")

        cmd = [
            self.ffmpeg, "-v", "error",
            "-i", str(video_path),
            "-i", str(audio_path),
            "-vf", ",".join(video_filters),
        ]
        total = video_duration + hold_seconds
        cmd += [
            "-af", f"apad=whole_dur={fmt(total)}",
            "-t", fmt(total),
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-y", str(output_path),
        ]
        return cmd

    def compose(self, video_path, audio_path, output_path, video_duration, hold_seconds,
                overlay=None, font_path=None, commands_path=None):
        """Overlay (optional), hold the last frame, pad the audio, mux."""
        if self.has_overlay(overlay, font_path, commands_path):
            overlay.write(commands_path)
        cmd = self.compose_cmd(video_path, audio_path, output_path, video_duration,
                               hold_seconds, overlay, font_path, commands_path)
        self.run(cmd, "create the final video")
        return output_path

    def probe_duration(self, path):
        """Container duration in seconds."""
        out = subprocess.check_output([
            self.ffprobe, "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json", str(path)
        ], text=True)
        return float(json.loads(out).get("format", {}).get("duration", 0.0))
