from dataclasses import dataclass

import numpy as np
import soundfile as sf

MIX_GAIN = 0.4


def fmt(value):
    """Locale-independent number for ffmpeg arguments (no exponent, no trailing zeros)."""
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


@dataclass(frozen=True)
class ChimeEvent:
    offset_seconds: float
    frequencies: tuple
    weights: tuple           # sin(draw) per frequency
    tone_duration: float


class AudioFilterGraph:
    """
    Declarative description of the cue track.
    Either silence, or a list of chimes delayed to their offsets and mixed.
    """
    def __init__(self, duration, sample_rate, events=(), exponent=20):
        self.duration = duration
        self.sample_rate = sample_rate
        self.events = list(events)
        self.exponent = exponent

    @property
    def silent(self):
        return not self.events

    def tone_expr(self, event):
        terms = "+".join(
            f"{fmt(w)}*sin({fmt(f)}*2*PI*t)" for f, w in zip(event.frequencies, event.weights)
        )
        return f"{fmt(MIX_GAIN)}*({terms})*pow(1-mod(t,{fmt(event.tone_duration)}),{fmt(self.exponent)})"

    def to_filter_complex(self):
        """The ffmpeg -filter_complex string; output pad is [a]."""
        if self.silent:
            return f"anullsrc=r={self.sample_rate}:cl=mono,atrim=duration={fmt(self.duration)}[a]"

        chains = []
        pads = []
        for i, event in enumerate(self.events):
            delay_ms = fmt(event.offset_seconds * 1000)
            chains.append(
                f"aevalsrc='{self.tone_expr(event)}':s={self.sample_rate}:d={fmt(event.tone_duration)}[t{i}]"
            )
            chains.append(f"[t{i}]adelay={delay_ms}|{delay_ms}[d{i}]")
            pads.append(f"[d{i}]")

        # amix stops with the last chime; pad and trim back to the full track
        mix = (f"{''.join(pads)}amix=inputs={len(self.events)}:duration=longest,"
               f"apad,atrim=duration={fmt(self.duration)}[a]")
        return ";".join(chains + [mix])


class CueSynthesizer:
    """Builds the chime track for a number of events."""

    def __init__(self, frequencies=(1046, 1396, 2093), tone_duration=0.2, max_events=40,
                 exponent=20, sample_rate=44100):
        self.frequencies = tuple(frequencies)
        self.tone_duration = tone_duration
        self.max_events = max_events
        self.exponent = exponent
        self.sample_rate = sample_rate

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.frequencies, settings.tone_duration, settings.max_blips,
                   settings.blip_exponent, settings.sample_rate)

    def build(self, event_count, duration, rng):
        """
        Evenly spaced chimes over `duration` seconds, at most max_events of them.
        Draws three values from rng per chime, in chime order.
        """
        if event_count <= 0:
            return AudioFilterGraph(duration, self.sample_rate, exponent=self.exponent)

        total = min(event_count, self.max_events)
        interval = duration / total

        events = []
        for i in range(total):
            weights = tuple(float(np.sin(rng.random())) for _ in self.frequencies)
            events.append(ChimeEvent(i * interval, self.frequencies, weights, self.tone_duration))

        return AudioFilterGraph(duration, self.sample_rate, events, self.exponent)


class CueRenderer:
    """Renders an AudioFilterGraph to samples in-process, same math as the ffmpeg graph."""

    def render(self, graph):
        n_samples = int(round(graph.duration * graph.sample_rate))
        track = np.zeros(n_samples, dtype=np.float64)
        if graph.silent:
            return track.astype(np.float32)

        ends = []
        for event in graph.events:
            tone_len = int(round(event.tone_duration * graph.sample_rate))
            t = np.arange(tone_len) / graph.sample_rate
            tone = np.zeros(tone_len)
            for f, w in zip(event.frequencies, event.weights):
                tone += w * np.sin(2 * np.pi * f * t)
            envelope = (1 - np.mod(t, event.tone_duration)) ** graph.exponent
            tone *= MIX_GAIN * envelope

            start = int(round(event.offset_seconds * graph.sample_rate))
            end = min(start + tone_len, n_samples)
            if start < end:
                track[start:end] += tone[:end - start]
            ends.append(end)

        # amix divides by the inputs still playing; a delayed input counts from t=0
        ends = np.sort(ends)
        active = len(ends) - np.searchsorted(ends, np.arange(n_samples), side="right")
        playing = active > 0
        track[playing] /= active[playing]

        peak = np.max(np.abs(track))
        if peak > 1.0:
            track /= peak
        return track.astype(np.float32)

    def save(self, graph, output_path):
        audio = self.render(graph)
        sf.write(output_path, audio, graph.sample_rate)
        print(f"[Audio] Saved to: {output_path}")
        return output_path
