"""
Tests for loader.py module.

Tests loading sub-models into the shared registry under prefixes.
"""

import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import torch
from gguf.constants import GGMLQuantizationType
from safetensors.torch import save_file

from model_converter.errors import LoadError, TensorNameCollision
from model_converter.loader import ModelLoader
from model_converter.sources import open_source
from tests.helpers import add_submodel, create_dummy_checkpoint, create_dummy_model, quiet_logger


class TestModelLoader(unittest.TestCase):
    """Tests for ModelLoader."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.loader = ModelLoader(logger=quiet_logger())

    def tearDown(self):
        self.loader.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_single_file_under_prefix(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)

        count = self.loader.load_from_single_file(path, "vae.")

        self.assertEqual(count, 4)
        self.assertIn("vae.layer1.weight", self.loader.registry)

    def test_single_checkpoint_file(self):
        path = create_dummy_checkpoint("model.ckpt", temp_dir=self.temp_dir)

        count = self.loader.load_from_single_file(path)

        self.assertEqual(count, 3)
        self.assertIn("model.diffusion_model.layer1.weight", self.loader.registry)

    def test_subpath_load(self):
        add_submodel(self.temp_dir, "text_encoder/model", names=["a", "b"])

        count = self.loader.load_from_subpath(self.temp_dir, "text_encoder/model", prefix="te.")

        self.assertEqual(count, 4)
        self.assertEqual(self.loader.registry.groups(), {"te.": 4})

    def test_subpath_absent_returns_none(self):
        """Test a missing sub-path is a distinguished result, not an error."""
        result = self.loader.load_from_subpath(self.temp_dir, "text_encoder/model", prefix="te.")

        self.assertIsNone(result)
        self.assertEqual(len(self.loader.registry), 0)

    def test_group_output_type_applied(self):
        add_submodel(self.temp_dir, "vae/diffusion_pytorch_model")
        self.loader.set_group_output_type("vae.", GGMLQuantizationType.Q8_0)

        self.loader.load_from_subpath(self.temp_dir, "vae/diffusion_pytorch_model", prefix="vae.")

        for descriptor in self.loader.registry:
            self.assertEqual(descriptor.output_type, GGMLQuantizationType.Q8_0)

    def test_explicit_target_type_wins(self):
        add_submodel(self.temp_dir, "vae/diffusion_pytorch_model")
        self.loader.set_group_output_type("vae.", GGMLQuantizationType.Q8_0)

        self.loader.load_from_subpath(
            self.temp_dir, "vae/diffusion_pytorch_model", GGMLQuantizationType.F32, prefix="vae."
        )

        for descriptor in self.loader.registry:
            self.assertEqual(descriptor.output_type, GGMLQuantizationType.F32)

    def test_unset_group_inherits_default(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)

        self.loader.load_from_single_file(path, "unet.")

        for descriptor in self.loader.registry:
            self.assertIsNone(descriptor.output_type)

    def test_same_prefix_collision(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)
        self.loader.load_from_single_file(path, "te.")

        with self.assertRaises(TensorNameCollision):
            self.loader.load_from_single_file(path, "te.")

        self.assertEqual(len(self.loader.registry), 4)

    def test_distinct_prefixes_no_collision(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)

        self.loader.load_from_single_file(path, "te.")
        self.loader.load_from_single_file(path, "te1.")

        self.assertEqual(len(self.loader.registry), 8)

    def test_corrupt_shard_leaves_registry_unchanged(self):
        """Test a bad shard among good ones inserts nothing."""
        create_dummy_model("unet/model-00001-of-00002.safetensors", temp_dir=self.temp_dir)
        bad = self.temp_dir / "unet" / "model-00002-of-00002.safetensors"
        bad.write_bytes(b"\x00" * 32)

        with self.assertRaises(LoadError):
            self.loader.load_from_subpath(self.temp_dir, "unet/model", prefix="unet.")

        self.assertEqual(len(self.loader.registry), 0)

    def test_failed_load_closes_opened_sources(self):
        """Test sources opened before a failure are released."""
        first = MagicMock()
        first.describe.return_value = []
        with patch('model_converter.loader.open_source',
                   side_effect=[first, LoadError("Corrupt safetensors header")]):
            with self.assertRaises(LoadError):
                self.loader._load_files(
                    [self.temp_dir / "a.safetensors", self.temp_dir / "b.safetensors"], "unet.", None
                )

        first.close.assert_called_once()

    def test_collision_closes_batch_sources(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)
        self.loader.load_from_single_file(path, "te.")
        second = MagicMock(wraps=open_source(path))

        with patch('model_converter.loader.open_source', return_value=second):
            with self.assertRaises(TensorNameCollision):
                self.loader.load_from_single_file(path, "te.")

        second.close.assert_called_once()

    def test_shards_reported_as_steps(self):
        logger = MagicMock()
        loader = ModelLoader(logger=logger)
        create_dummy_model("unet/model-00001-of-00002.safetensors", temp_dir=self.temp_dir)
        save_file({"extra.weight": torch.zeros(4, 4)}, str(self.temp_dir / "unet" / "model-00002-of-00002.safetensors"))

        loader.load_from_subpath(self.temp_dir, "unet/model", prefix="unet.")
        loader.close()

        self.assertEqual(
            [c.args[:2] for c in logger.step.call_args_list],
            [(1, 2), (2, 2)]
        )

    def test_missing_file(self):
        with self.assertRaises(LoadError):
            self.loader.load_from_single_file(self.temp_dir / "missing.safetensors")

    def test_group_sources_recorded(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)

        self.loader.load_from_single_file(path, "vae.")

        self.assertEqual(self.loader.group_sources, {"vae.": [str(path)]})


if __name__ == '__main__':
    unittest.main()
