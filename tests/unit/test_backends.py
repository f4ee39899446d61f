# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
import importlib.util
import tempfile
import threading
import time
import unittest
from pathlib import Path

import torch
from parameterized import parameterized

from vqvdb import (
    BackendShutdownError,
    CodecBackend,
    InvalidTokenError,
    ModelInfo,
    ModelLoadError,
    ShapeMismatchError,
    UnknownBackendError,
    available_backends,
    create_backend,
    get_backend_class,
    register_backend,
)
from vqvdb.backends import TorchBackend
from vqvdb.container import token_width_for
from vqvdb.utils.tests import (
    STUB_BACKEND_ID,
    QuantizingStubBackend,
    register_stub_backend,
    unregister_stub_backend,
    write_stub_model,
)


class TestModelInfo(unittest.TestCase):
    def test_from_mapping_accepts_strings(self):
        info = ModelInfo.from_mapping(
            {"patch_size": "8", "token_length": "64", "alphabet_size": "512", "model_id": "vq-a", "in_channels": "2"}
        )
        self.assertEqual(info, ModelInfo(8, 64, 512, "vq-a", in_channels=2))
        self.assertEqual(info.patch_shape, (2, 8, 8, 8))

    def test_token_length_from_latent_shape(self):
        info = ModelInfo.from_mapping(
            {"patch_size": 8, "alphabet_size": 256, "model_id": "vq-b", "latent_shape": "[4, 4, 4]"}
        )
        self.assertEqual(info.token_length, 64)
        self.assertEqual(info.latent_shape, (4, 4, 4))

    def test_missing_token_length_raises(self):
        with self.assertRaises(KeyError):
            ModelInfo.from_mapping({"patch_size": 8, "alphabet_size": 256, "model_id": "vq-c"})

    @parameterized.expand(
        [
            ({"patch_size": 0},),
            ({"alphabet_size": 1},),
            ({"alphabet_size": 2**32},),
            ({"token_length": 2**32},),
            ({"in_channels": 2**16},),
            ({"model_id": ""},),
            ({"latent_shape": (3, 3)},),
        ]
    )
    def test_invalid_fields_raise(self, override):
        fields = dict(patch_size=4, token_length=8, alphabet_size=16, model_id="vq", in_channels=1) | override
        with self.assertRaises(ValueError):
            ModelInfo(**fields)

    def test_largest_alphabet_uses_four_byte_tokens(self):
        info = ModelInfo(4, 8, 2**32 - 1, "vq")
        self.assertEqual(token_width_for(info.alphabet_size), 4)

    def test_to_dict(self):
        info = ModelInfo(4, 8, 16, "vq", latent_shape=(2, 4))
        self.assertEqual(info.to_dict()["latent_shape"], [2, 4])
        self.assertEqual(ModelInfo.from_mapping(info.to_dict()), info)


class TestRegistry(unittest.TestCase):
    def setUp(self):
        register_stub_backend()

    def tearDown(self):
        unregister_stub_backend()

    def test_torch_backend_is_always_available(self):
        self.assertIn("torch", available_backends())
        self.assertIs(get_backend_class("torch"), TorchBackend)

    def test_onnx_backend_follows_onnxruntime(self):
        has_ort = importlib.util.find_spec("onnxruntime") is not None
        self.assertEqual("onnx" in available_backends(), has_ort)

    def test_available_backends_is_sorted(self):
        backends = available_backends()
        self.assertEqual(list(backends), sorted(backends))
        self.assertIn(STUB_BACKEND_ID, backends)

    def test_unknown_backend(self):
        with self.assertRaises(UnknownBackendError) as ctx:
            get_backend_class("tensorrt")
        self.assertIn("torch", str(ctx.exception))

    def test_unknown_backend_fails_before_touching_the_model(self):
        with self.assertRaises(UnknownBackendError):
            create_backend("tensorrt", "/does/not/exist.pt")

    def test_duplicate_registration_requires_replace(self):
        with self.assertRaises(ValueError):
            register_backend(STUB_BACKEND_ID)(type("OtherStub", (QuantizingStubBackend,), {}))
        with self.assertRaises(TypeError):
            register_backend("not-a-backend")(object)

    def test_create_backend(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            model = write_stub_model(Path(tmpdir) / "model.json", model_id="stub-q8")
            with create_backend(STUB_BACKEND_ID, model) as backend:
                self.assertIsInstance(backend, CodecBackend)
                self.assertEqual(backend.backend_id, STUB_BACKEND_ID)
                self.assertEqual(backend.describe().model_id, "stub-q8")

    def test_missing_model_raises(self):
        with self.assertRaises(ModelLoadError):
            create_backend(STUB_BACKEND_ID, "/does/not/exist.json")


class TestBackendContract(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.model = write_stub_model(Path(self._tmpdir.name) / "model.json", patch_size=4, alphabet_size=16)
        self.backend = QuantizingStubBackend.initialize(self.model)

    def tearDown(self):
        self.backend.shutdown()
        self._tmpdir.cleanup()

    def test_encode_decode_shapes(self):
        patches = torch.randint(0, 16, (5, 1, 4, 4, 4)).to(torch.float32)
        tokens = self.backend.encode(patches)
        self.assertEqual(tuple(tokens.shape), (5, 64))
        self.assertEqual(tokens.dtype, torch.int64)
        decoded = self.backend.decode(tokens)
        self.assertEqual(tuple(decoded.shape), (5, 1, 4, 4, 4))
        self.assertEqual(decoded.dtype, torch.float32)
        self.assertTrue(torch.equal(decoded, patches))

    def test_rows_are_independent(self):
        patches = torch.randint(0, 16, (6, 1, 4, 4, 4)).to(torch.float32)
        batched = self.backend.encode(patches)
        single = torch.cat([self.backend.encode(patches[i : i + 1]) for i in range(6)])
        self.assertTrue(torch.equal(batched, single))

    def test_empty_batch(self):
        self.assertEqual(tuple(self.backend.encode(torch.zeros(0, 1, 4, 4, 4)).shape), (0, 64))
        self.assertEqual(tuple(self.backend.decode(torch.zeros(0, 64, dtype=torch.int64)).shape), (0, 1, 4, 4, 4))
        self.assertEqual(self.backend.calls, [])

    @parameterized.expand([((2, 1, 8, 8, 8),), ((2, 2, 4, 4, 4),), ((1, 4, 4, 4),)])
    def test_encode_shape_mismatch(self, shape):
        with self.assertRaises(ShapeMismatchError):
            self.backend.encode(torch.zeros(shape))

    def test_decode_shape_mismatch(self):
        with self.assertRaises(ShapeMismatchError) as ctx:
            self.backend.decode(torch.zeros(2, 63, dtype=torch.int64))
        self.assertIn("expected", str(ctx.exception))

    def test_decode_rejects_float_tokens(self):
        with self.assertRaises(TypeError):
            self.backend.decode(torch.zeros(2, 64))

    @parameterized.expand([(-1,), (16,), (1000,)])
    def test_decode_rejects_tokens_outside_codebook(self, bad):
        tokens = torch.zeros(3, 64, dtype=torch.int64)
        tokens[1, 7] = bad
        with self.assertRaises(InvalidTokenError):
            self.backend.decode(tokens)
        # Invalid tokens never reach the model.
        self.assertEqual(self.backend.calls, [])

    def test_shutdown_is_idempotent(self):
        self.backend.shutdown()
        self.backend.shutdown()
        self.assertTrue(self.backend.is_closed)
        self.assertTrue(self.backend.released)
        with self.assertRaises(BackendShutdownError):
            self.backend.encode(torch.zeros(1, 1, 4, 4, 4))
        self.assertIn("closed", repr(self.backend))

    def test_concurrent_calls_are_serialized(self):
        active = []
        overlaps = []
        original = self.backend._encode_batch

        def tracking_encode(patches):
            active.append(1)
            if len(active) > 1:
                overlaps.append(len(active))
            try:
                time.sleep(0.001)
                return original(patches)
            finally:
                active.pop()

        self.backend._encode_batch = tracking_encode
        patches = torch.ones(2, 1, 4, 4, 4)
        threads = [threading.Thread(target=self.backend.encode, args=(patches,)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(overlaps, [])
        self.assertEqual(len(self.backend.calls), 8)

    def test_unsupported_device_raises_model_load_error(self):
        with self.assertRaises(ModelLoadError):
            QuantizingStubBackend(self.model, "cuda")


if __name__ == "__main__":
    unittest.main()
