import sys
import threading
import types
import unittest
from unittest import mock

import numpy as np

from audio_backends import (
    MicrophoneBackend,
    SimulatedBackend,
    create_audio_backend,
    ensure_permission,
    list_input_devices,
)
from config import Config, DetectorBackend
from errors import PermissionDenied, ResourceUnavailable


class FakePortAudioError(Exception):
    pass


def fake_sounddevice(**attrs):
    module = types.SimpleNamespace(InputStream=mock.MagicMock(), PortAudioError=FakePortAudioError)
    for key, value in attrs.items():
        setattr(module, key, value)
    return module


class TestCreateAudioBackend(unittest.TestCase):
    def test_microphone(self):
        cfg = Config()
        cfg.audio.device_index = 3
        backend = create_audio_backend(cfg)
        self.assertIsInstance(backend, MicrophoneBackend)
        self.assertEqual(backend.device_index, 3)

    def test_simulated(self):
        cfg = Config()
        cfg.audio.backend = DetectorBackend.SIMULATED
        self.assertIsInstance(create_audio_backend(cfg), SimulatedBackend)


class TestSimulatedBackend(unittest.TestCase):
    def test_push_requires_open(self):
        backend = SimulatedBackend()
        self.assertFalse(backend.push(np.zeros(4)))

        received = []
        backend.open(16000, 4, received.append)
        self.assertTrue(backend.is_open)
        self.assertTrue(backend.push(np.zeros(4)))
        self.assertEqual(len(received), 1)

        backend.close()
        self.assertFalse(backend.is_open)
        self.assertFalse(backend.push(np.zeros(4)))

    def test_replays_frames_on_thread(self):
        frames = [np.full(4, i, dtype=np.float32) for i in range(5)]
        backend = SimulatedBackend(frames=frames, realtime=False)
        received = []
        done = threading.Event()

        def on_frame(frame):
            received.append(frame)
            if len(received) == len(frames):
                done.set()

        backend.open(16000, 4, on_frame)
        self.assertTrue(done.wait(2.0))
        backend.close()
        self.assertEqual([int(f[0]) for f in received], [0, 1, 2, 3, 4])

    def test_unavailable_and_refused(self):
        with self.assertRaises(ResourceUnavailable):
            SimulatedBackend(available=False).open(16000, 256, lambda f: None)
        with self.assertRaises(PermissionDenied):
            ensure_permission(SimulatedBackend(permission_granted=False))


class TestMicrophoneBackend(unittest.TestCase):
    def test_open_forwards_copies(self):
        sd = fake_sounddevice()
        stream = sd.InputStream.return_value
        received = []
        backend = MicrophoneBackend(device_index=2)

        with mock.patch.dict(sys.modules, {"sounddevice": sd}):
            backend.open(16000, 256, received.append)
            kwargs = sd.InputStream.call_args.kwargs
            self.assertEqual(kwargs["device"], 2)
            self.assertEqual(kwargs["samplerate"], 16000)
            self.assertEqual(kwargs["blocksize"], 256)
            self.assertEqual(kwargs["dtype"], "float32")
            stream.start.assert_called_once()
            self.assertTrue(backend.is_open)

            indata = np.ones((256, 1), dtype=np.float32)
            kwargs["callback"](indata, 256, None, None)
            self.assertEqual(len(received), 1)
            self.assertIsNot(received[0], indata)
            np.testing.assert_array_equal(received[0], indata)

            backend.close()
            stream.stop.assert_called_once()
            stream.close.assert_called_once()
            self.assertFalse(backend.is_open)

    def test_open_failure_is_resource_unavailable(self):
        sd = fake_sounddevice()
        sd.InputStream.side_effect = FakePortAudioError("Device unavailable")
        backend = MicrophoneBackend()
        with mock.patch.dict(sys.modules, {"sounddevice": sd}):
            with self.assertRaises(ResourceUnavailable):
                backend.open(16000, 256, lambda f: None)
        self.assertFalse(backend.is_open)

    def test_permission_callback(self):
        self.assertTrue(MicrophoneBackend().request_permission())
        with self.assertRaises(PermissionDenied):
            ensure_permission(MicrophoneBackend(permission_callback=lambda: False))

    def test_list_input_devices_skips_outputs(self):
        devices = [
            {"name": "Speakers", "max_input_channels": 0, "default_samplerate": 48000.0},
            {"name": "USB Mic", "max_input_channels": 1, "default_samplerate": 16000.0},
        ]
        sd = fake_sounddevice(query_devices=mock.MagicMock(return_value=devices))
        with mock.patch.dict(sys.modules, {"sounddevice": sd}):
            found = list_input_devices()
        self.assertEqual(found, [{"index": 1, "name": "USB Mic", "inputs": 1, "default_samplerate": 16000.0}])


if __name__ == "__main__":
    unittest.main()
