"""
Tests for pipelines.py module.

Tests which sub-models each family loads, under which prefixes, and the
end-to-end conversion of a pipeline directory.
"""

import hashlib
import shutil
import tempfile
import unittest
from pathlib import Path

from gguf.constants import GGMLQuantizationType

from model_converter import __version__, pipelines
from model_converter.detector import ModelVersion
from model_converter.errors import DetectionError, LoadError
from model_converter.params import ConvertParams
from model_converter.reader import read_container
from tests.helpers import (
    create_dummy_model,
    create_flux_pipeline,
    create_pipeline_dir,
    create_sd3_pipeline,
    create_sd_pipeline,
    create_sdxl_pipeline,
    quiet_logger,
)

Q = GGMLQuantizationType


class PipelineTestCase(unittest.TestCase):
    """Base class with a temp directory and helpers to run load_model."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.root = self.temp_dir / "model"
        self.loaders = []

    def tearDown(self):
        for loader in self.loaders:
            loader.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def params(self, **kwargs):
        kwargs.setdefault('model_path', self.root)
        kwargs.setdefault('output_path', self.temp_dir / "out.gguf")
        return ConvertParams(**kwargs)

    def load(self, **kwargs):
        loader, version = pipelines.load_model(self.params(**kwargs), quiet_logger())
        self.loaders.append(loader)
        return loader, version


class TestFamilies(PipelineTestCase):
    """Tests for each family converter."""

    def test_sd1(self):
        create_sd_pipeline(self.root)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.SD1)
        self.assertEqual(loader.registry.groups(), {"te.": 2, "vae.": 2, "unet.": 4})
        self.assertIn("unet.down_blocks.0.weight", loader.registry)

    def test_sd2(self):
        create_sd_pipeline(self.root, hidden_size=1024)
        _, version = self.load()
        self.assertEqual(version, ModelVersion.SD2)

    def test_sdxl(self):
        create_sdxl_pipeline(self.root)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.SDXL)
        self.assertEqual(list(loader.registry.groups()), ["te.", "te1.", "vae.", "unet."])

    def test_sdxl_refiner_without_text_encoder(self):
        """Test a missing first text encoder is skipped for SDXL."""
        create_sdxl_pipeline(self.root, with_text_encoder=False, refiner=True)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.SDXL_REFINER)
        self.assertEqual(list(loader.registry.groups()), ["te1.", "vae.", "unet."])

    def test_sd3(self):
        create_sd3_pipeline(self.root, num_layers=38)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.SD3_5_8B)
        self.assertEqual(list(loader.registry.groups()), ["te.", "te1.", "te2.", "vae.", "transformer."])

    def test_flux_dev(self):
        create_flux_pipeline(self.root)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.FLUX_DEV)
        self.assertEqual(list(loader.registry.groups()), ["te.", "te1.", "vae.", "transformer."])
        self.assertIn("transformer.double_blocks.0.weight", loader.registry)
        self.assertEqual(loader.group_sources["transformer."], [str(self.root / "flux1-dev.safetensors")])

    def test_flux_schnell(self):
        create_flux_pipeline(self.root, guidance_embeds=False)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.FLUX_SCHNELL)
        self.assertEqual(loader.group_sources["transformer."], [str(self.root / "flux1-schnell.safetensors")])

    def test_flux_lite_uses_schnell_file(self):
        create_flux_pipeline(self.root, num_layers=8)

        loader, version = self.load()

        self.assertEqual(version, ModelVersion.FLUX_LITE)
        self.assertEqual(loader.group_sources["transformer."], [str(self.root / "flux1-schnell.safetensors")])

    def test_every_version_has_converter(self):
        self.assertEqual(set(pipelines.FAMILY_CONVERTERS), set(ModelVersion))


class TestSubmodelRules(PipelineTestCase):
    """Tests for explicit files, optional vae and per-group types."""

    def test_explicit_diffusion_model_skips_vae(self):
        create_sd_pipeline(self.root)
        unet = create_dummy_model("unet.safetensors", temp_dir=self.temp_dir)

        loader, _ = self.load(diffusion_model_path=unet)

        groups = loader.registry.groups()
        self.assertNotIn("vae.", groups)
        self.assertNotIn("unet.", groups)
        self.assertEqual(groups[""], 4)
        self.assertIn("layer1.weight", loader.registry)

    def test_explicit_diffusion_and_vae(self):
        create_sd_pipeline(self.root)
        unet = create_dummy_model("unet.safetensors", temp_dir=self.temp_dir)
        vae = create_dummy_model("vae.safetensors", temp_dir=self.temp_dir)

        loader, _ = self.load(diffusion_model_path=unet, vae_path=vae)

        self.assertIn("vae.layer1.weight", loader.registry)
        self.assertEqual(loader.group_sources["vae."], [str(vae)])

    def test_flux_explicit_backbone_prefix(self):
        create_flux_pipeline(self.root)
        backbone = create_dummy_model("flux1-dev.safetensors", temp_dir=self.temp_dir)

        loader, _ = self.load(diffusion_model_path=backbone)

        self.assertIn("model.diffusion_model.layer1.weight", loader.registry)
        self.assertNotIn("transformer.", loader.registry.groups())

    def test_explicit_text_encoder_replaces_subpath(self):
        create_sd_pipeline(self.root)
        clip = create_dummy_model("clip_l.safetensors", temp_dir=self.temp_dir)

        loader, _ = self.load(clip_l_path=clip)

        self.assertIn("te.layer1.weight", loader.registry)
        self.assertNotIn("te.text_model.layer.weight", loader.registry)

    def test_group_output_types(self):
        create_sd_pipeline(self.root)

        loader, _ = self.load(output_type=Q.Q4_0, vae_output_type=Q.Q8_0)

        self.assertEqual(loader.registry["vae.decoder.conv.weight"].output_type, Q.Q8_0)
        self.assertEqual(loader.registry["unet.down_blocks.0.weight"].output_type, Q.Q4_0)
        self.assertIsNone(loader.registry["te.text_model.layer.weight"].output_type)

    def test_missing_submodel_named(self):
        create_sd_pipeline(self.root)
        shutil.rmtree(self.root / "unet")

        with self.assertRaises(LoadError) as ctx:
            self.load()

        self.assertEqual(ctx.exception.submodel, "unet")
        self.assertIn("unet", str(ctx.exception))

    def test_corrupt_submodel_named(self):
        create_sd_pipeline(self.root)
        (self.root / "vae" / "diffusion_pytorch_model.safetensors").write_bytes(b"\x00" * 16)

        with self.assertRaises(LoadError) as ctx:
            self.load()

        self.assertEqual(ctx.exception.submodel, "vae")

    def test_unknown_pipeline(self):
        create_pipeline_dir(self.root, "KandinskyPipeline")

        with self.assertRaises(DetectionError):
            self.load()

    def test_single_file(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)

        loader, version = self.load(model_path=path)

        self.assertIsNone(version)
        self.assertEqual(loader.registry.groups(), {"": 4})


class TestConvertModel(PipelineTestCase):
    """Tests for convert_model function."""

    def test_pipeline_to_container(self):
        create_sd_pipeline(self.root)
        params = self.params(output_type=Q.Q8_0, vae_output_type=Q.F16)

        digest = pipelines.convert_model(params, quiet_logger())

        self.assertEqual(digest, hashlib.sha256(params.output_path.read_bytes()).hexdigest())
        info = read_container(params.output_path)
        self.assertEqual(info.metadata["sd.model_version"], "SD1")
        self.assertEqual(info.metadata["sd.converter.version"], __version__)
        self.assertEqual(info.metadata["sd.group.vae.types"], ["F16", "F32"])
        self.assertEqual(info.tensor("unet.down_blocks.0.weight").qtype, Q.Q8_0)
        self.assertEqual(info.tensor("vae.decoder.conv.weight").qtype, Q.F16)
        self.assertEqual(len(info.tensors), 8)

    def test_single_file_version_unknown(self):
        path = create_dummy_model("model.safetensors", temp_dir=self.temp_dir)
        params = self.params(model_path=path)

        pipelines.convert_model(params, quiet_logger())

        info = read_container(params.output_path)
        self.assertEqual(info.metadata["sd.model_version"], "unknown")
        self.assertIn("sd.group.root.sources", info.metadata)

    def test_load_failure_writes_nothing(self):
        create_sd_pipeline(self.root)
        shutil.rmtree(self.root / "vae")
        params = self.params()

        with self.assertRaises(LoadError):
            pipelines.convert_model(params, quiet_logger())

        self.assertFalse(params.output_path.exists())


if __name__ == '__main__':
    unittest.main()
