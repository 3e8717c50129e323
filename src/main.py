import os
import shutil
import subprocess
import sys

from reveal_audio import CueRenderer, CueSynthesizer
from reveal_core import (Ingest, MissingPrerequisiteError, PixelPermutation, RevealScheduler,
                         RevealSettings, make_rng)
from reveal_encode import EncoderError, FFmpegGateway, OverlayTrack
from reveal_session import SessionCounter

AUDIO_NAME = "audio.wav"
VIDEO_NAME = "reveal.mp4"            # Silent reveal, before overlay and hold
OVERLAY_NAME = "overlay_cmds.txt"
DURATION_TOLERANCE = 0.1


def remove_path(path):
    if os.path.isdir(path):
        shutil.rmtree(path)
    elif os.path.exists(path):
        os.remove(path)


def intermediates(settings):
    return [settings.frames_dir, settings.path(AUDIO_NAME), settings.path(VIDEO_NAME),
            settings.path(OVERLAY_NAME)]


def check_duration(gateway, output_path, expected):
    try:
        actual = gateway.probe_duration(output_path)
    except (subprocess.CalledProcessError, OSError, ValueError) as e:
        print(f"[Warning] Could not probe output duration: {e}")
        return None
    if abs(actual - expected) > DURATION_TOLERANCE:
        print(f"[Warning] Output is {actual:.3f}s, expected {expected:.3f}s")
    return actual


def run(settings, gateway=None):
    """One full session. Raises on the first fatal error; intermediates are kept then."""
    gateway = gateway or FFmpegGateway(settings.ffmpeg, settings.ffprobe)
    counter = SessionCounter(settings.state_file)

    previous = counter.load()
    total_followers = previous + settings.followers_this_session
    print(f"[Session] Previous followers: {previous}. New followers this session: "
          f"{settings.followers_this_session}. Total: {total_followers}.")

    # 1. Prerequisites
    gateway.check_available()
    source = Ingest.from_image(settings.source_image)

    font_path = settings.font_path
    if not font_path or not os.path.exists(font_path):
        print(f"[Warning] Font file not found at '{font_path}'. "
              "The text counters will NOT be drawn. Continuing without text overlay...")
        font_path = None

    output_path = settings.path(settings.output_name)
    for path in [output_path] + intermediates(settings):
        remove_path(path)

    # 2. Frames (the generator is consumed by the shuffle first, the chimes second)
    rng = make_rng(settings.source_image)
    height, width = source.shape[:2]
    permutation = PixelPermutation.generate(width, height, rng)

    total_pixels = min(total_followers * settings.pixels_per_follower, len(permutation))
    print(f"[Reveal] Revealing {total_pixels} of {len(permutation)} total pixels.")

    scheduler = RevealScheduler()
    canvas = Ingest.blank_canvas(source, settings.background)
    frames = scheduler.render(source, canvas, permutation, total_pixels, settings.total_frames)
    scheduler.write_frames(frames, settings.frames_dir, settings.total_frames)

    # 3. Audio
    graph = CueSynthesizer.from_settings(settings).build(
        settings.followers_this_session, settings.duration_seconds, rng)
    print(f"[Audio] {len(graph.events)} chimes over {settings.duration_seconds}s")
    audio_path = settings.path(AUDIO_NAME)
    if settings.audio_backend == "numpy":
        CueRenderer().save(graph, audio_path)
    else:
        gateway.make_audio(graph, audio_path)

    # 4. Video + compose
    video_path = gateway.make_video(settings.frames_dir, settings.fps, settings.path(VIDEO_NAME))

    overlay = None
    if font_path:
        targets = RevealScheduler.schedule(total_pixels, settings.total_frames)
        overlay = OverlayTrack.build(settings.followers_this_session, targets, settings.fps)
    gateway.compose(video_path, audio_path, output_path, settings.duration_seconds,
                    settings.hold_seconds, overlay, font_path, settings.path(OVERLAY_NAME))

    print("[Encoder] Video created successfully!")
    print(f"---> Saved to: {os.path.abspath(output_path)}")
    check_duration(gateway, output_path, settings.output_duration)

    # 5. Only a complete run cleans up and advances the counter
    print("Cleaning up temporary files...")
    for path in intermediates(settings):
        remove_path(path)
    counter.save(total_followers)
    return output_path


def main():
    print("--- Starting video frame generation ---")
    try:
        # 1. Define Settings
        config = RevealSettings(
            source_image=os.environ.get("REVEAL_SOURCE", "source.jpg"),
            followers_this_session=1,
            pixels_per_follower=5000,
            duration_seconds=10,
            fps=30,
            hold_seconds=30,
            font_path="/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        )
        run(config)
    except MissingPrerequisiteError as e:
        print(f"[Error] {e}")
        sys.exit(1)
    except EncoderError as e:
        print(e.report())
        sys.exit(1)
    except (ValueError, OSError) as e:
        print(f"[Error] {e}")
        sys.exit(1)

    print("All tasks finished.")

if __name__ == "__main__":
    main()
