import numpy as np
import pytest
from scipy.io import wavfile

from conftest import FakeSource, FakeSpeech
from freqguard.alerts import AlertSequence, CountermeasureError, CountermeasureErrorKind, load_clip
from freqguard.countermeasure import (
    PROFILE_GAIN_SCALE,
    CountermeasureController,
    CountermeasureState,
    build_voice,
)
from freqguard.settings import CountermeasureProfile, DetectionSettings
from freqguard.synth import AudioMixer, ClipPlayer, Voice


class StreamingMixer(AudioMixer):
    """Mixer that reports a live output stream while the test drives render()."""

    running = True


def _voices(mixer):
    return [s for s in mixer.sources if isinstance(s, Voice)]


def _write_tone(path, seconds=0.05, rate=8000):
    t = np.arange(int(seconds * rate)) / rate
    wavfile.write(str(path), rate, (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32))
    return path


def test_activate_is_idempotent(controller, mixer):
    settings = DetectionSettings()
    assert controller.activate(settings) is True
    assert controller.activate(settings) is False
    assert controller.state is CountermeasureState.ACTIVE
    assert len(_voices(mixer)) == 1


def test_deactivate_when_idle_is_noop(controller):
    assert controller.deactivate() is False
    assert controller.state is CountermeasureState.IDLE


def test_deactivate_fades_then_clears_output(speech, tmp_path):
    mixer = StreamingMixer(sample_rate=8000, blocksize=256)
    alerts = AlertSequence(mixer, speech, tmp_path / "siren.wav", tmp_path / "neutralize.wav")
    controller = CountermeasureController(mixer, alerts)
    controller.activate(DetectionSettings())
    mixer.render(400)
    assert controller.deactivate() is True
    assert controller.active is None
    voice = _voices(mixer)[0]
    assert voice.ends_at == pytest.approx(0.05 + 0.3)
    mixer.render(int(0.5 * mixer.sample_rate))
    assert mixer.sources == ()
    assert not mixer.render(256).any()


def test_deactivate_without_output_stream_drops_voice_at_once(controller, mixer):
    settings = DetectionSettings()
    for _ in range(50):
        controller.activate(settings)
        controller.deactivate()
    assert mixer.sources == ()
    controller.activate(settings)
    assert len(_voices(mixer)) == 1


def test_repeated_cycles_leave_no_residue(controller, mixer):
    settings = DetectionSettings()
    for _ in range(3):
        controller.activate(settings)
        mixer.render(256)
        controller.deactivate()
        mixer.render(int(0.5 * mixer.sample_rate))
    assert mixer.sources == ()
    controller.activate(settings)
    assert len(_voices(mixer)) == 1


def test_mute_stage_ramps_input_and_is_removed(controller):
    source = FakeSource()
    controller.activate(DetectionSettings(), input_path=source)
    assert source.gain is not None
    assert source.gain.value_at(0.0) == 0.0
    assert source.gain.value_at(2.5) == pytest.approx(0.5)
    assert source.gain.value_at(10.0) == pytest.approx(1.0)
    controller.deactivate()
    assert source.gain is None


def test_standard_profile_gain_tracks_alert_volume():
    voice = build_voice(DetectionSettings(alert_volume=0.5), now=0.0)
    assert len(voice.oscillators) == 2
    assert voice.gain.value_at(0.0) == pytest.approx(0.5 * PROFILE_GAIN_SCALE)


def test_standard_sweep_loops():
    voice = build_voice(DetectionSettings(), now=0.0)
    low = voice.oscillators[0].frequency
    assert low.value_at(1.0) == pytest.approx(9000.0)
    assert low.value_at(2.0) == pytest.approx(low.value_at(0.0))
    assert low.value_at(3.0) == pytest.approx(9000.0)


def test_advanced_profile_waveforms():
    voice = build_voice(DetectionSettings(countermeasure_profile=CountermeasureProfile.ADVANCED), now=0.0)
    assert [o.waveform for o in voice.oscillators] == ["sawtooth", "square"]


def test_custom_profile_uses_custom_tone():
    settings = DetectionSettings(
        countermeasure_profile=CountermeasureProfile.CUSTOM,
        custom_frequency_hz=2500,
        custom_waveform="triangle",
        custom_volume=0.25,
    )
    voice = build_voice(settings, now=0.0)
    assert len(voice.oscillators) == 1
    assert voice.oscillators[0].waveform == "triangle"
    assert voice.oscillators[0].frequency.value_at(5.0) == pytest.approx(2500.0)
    assert voice.gain.value_at(0.0) == pytest.approx(0.25)


def test_missing_assets_and_speech_do_not_block_generator(mixer, tmp_path):
    alerts = AlertSequence(mixer, FakeSpeech(supported=False), tmp_path / "a.wav", tmp_path / "b.wav")
    controller = CountermeasureController(mixer, alerts)
    assert controller.activate(DetectionSettings())
    assert len(_voices(mixer)) == 1


def test_alert_sequence_runs_in_order(mixer, speech, tmp_path):
    siren = _write_tone(tmp_path / "siren.wav")
    neutralize = _write_tone(tmp_path / "neutralize.wav", seconds=0.1)
    alerts = AlertSequence(mixer, speech, siren, neutralize, message="hello")
    alerts.start(0.8)
    assert speech.spoken == []
    assert len(alerts.players) == 1

    mixer.render(512)
    assert speech.spoken == ["hello"]
    assert len(alerts.players) == 2
    assert isinstance(mixer.sources[0], ClipPlayer)


def test_cancel_stops_pending_speech(mixer, speech, tmp_path):
    siren = _write_tone(tmp_path / "siren.wav")
    alerts = AlertSequence(mixer, speech, siren, None)
    alerts.start(0.8)
    alerts.cancel()
    mixer.render(512)
    assert speech.spoken == []
    assert speech.cancelled == 1
    assert mixer.sources == ()


def test_load_clip_resamples_and_reports_missing(tmp_path):
    path = _write_tone(tmp_path / "tone.wav", seconds=0.1, rate=16000)
    clip = load_clip(path, 8000)
    assert clip.dtype == np.float32
    assert clip.size == 800

    with pytest.raises(CountermeasureError) as excinfo:
        load_clip(tmp_path / "nope.wav", 8000)
    assert excinfo.value.kind is CountermeasureErrorKind.ASSET_UNAVAILABLE


class ExplodingAlerts:
    def start(self, volume):
        raise RuntimeError("boom")

    def cancel(self):
        raise RuntimeError("boom")


class ExplodingInput:
    def clock(self):
        return 0.0

    def insert_gain(self, schedule):
        pass

    def remove_gain(self):
        raise RuntimeError("boom")


def test_teardown_failures_never_raise(mixer):
    controller = CountermeasureController(mixer, ExplodingAlerts())
    assert controller.activate(DetectionSettings(), input_path=ExplodingInput())
    assert controller.deactivate() is True
    assert controller.state is CountermeasureState.IDLE


def test_siren_ending_after_cancel_plays_nothing(mixer, speech, tmp_path):
    neutralize = _write_tone(tmp_path / "neutralize.wav", seconds=0.1)
    alerts = AlertSequence(mixer, speech, _write_tone(tmp_path / "siren.wav"), neutralize)
    alerts.start(0.8)
    on_end = alerts.players[0].on_end
    alerts.cancel()
    on_end()
    assert speech.spoken == []
    assert alerts.players == ()
    assert mixer.sources == ()
