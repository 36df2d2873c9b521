"""Tests for applying overrides to workflows."""

import copy

import pytest

from comfyui_mcp.errors import InvalidWorkflowError
from comfyui_mcp.graph import Workflow
from comfyui_mcp.overrides import (
    LoraSpec,
    WorkflowOverrides,
    apply_overrides,
    apply_overrides_with_report,
    find_lora_sources,
)


def no_upload(path):
    raise AssertionError("uploader should not be called")


def lora_ids(wf):
    return [nid for nid, node in wf.items() if node.class_type == "LoraLoader"]


def with_clip_loader(graph):
    graph["10"] = {"class_type": "CLIPLoader", "inputs": {"clip_name": "clip_l.safetensors", "type": "stable_diffusion"}}
    return graph


class TestNoMutation:
    """Inputs are never modified."""

    def test_input_dict_unchanged(self, checkpoint_workflow):
        original = copy.deepcopy(checkpoint_workflow)
        apply_overrides(
            checkpoint_workflow,
            {"positive_prompt": "x", "steps": 5, "lora": [{"name": "a.safetensors"}], "width": 768},
            uploader=no_upload,
        )
        assert checkpoint_workflow == original

    def test_input_workflow_unchanged(self, flux_workflow):
        wf = Workflow.from_dict(flux_workflow)
        before = wf.to_dict()
        apply_overrides(wf, {"lora": [{"name": "a"}], "cfg": 1.0}, uploader=no_upload)
        assert wf.to_dict() == before

    @pytest.mark.parametrize("overrides", [None, {}, WorkflowOverrides()])
    def test_empty_overrides_return_equal_graph(self, checkpoint_workflow, overrides):
        result = apply_overrides(checkpoint_workflow, overrides, uploader=no_upload)
        assert result.to_dict() == checkpoint_workflow


class TestPrompts:
    def test_sets_first_matching_prompt(self, checkpoint_workflow):
        wf = apply_overrides(checkpoint_workflow, {"positive_prompt": "a fox", "negative_prompt": "ugly"})
        assert wf["6"].inputs["text"] == "a fox"
        assert wf["7"].inputs["text"] == "ugly"

    def test_only_first_positive_is_changed(self, checkpoint_workflow):
        checkpoint_workflow["11"] = copy.deepcopy(checkpoint_workflow["6"])
        wf = apply_overrides(checkpoint_workflow, {"positive_prompt": "a fox"})
        assert wf["6"].inputs["text"] == "a fox"
        assert wf["11"].inputs["text"] == "a cat"

    def test_renamed_titles(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"positive_prompt": "p", "negative_prompt": "n"})
        assert wf["4"].inputs["text"] == "p"
        assert wf["5"].inputs["text"] == "n"


class TestSamplerSettings:
    """Sampler fields move in lockstep."""

    def test_all_samplers_updated(self, checkpoint_workflow):
        checkpoint_workflow["12"] = copy.deepcopy(checkpoint_workflow["3"])
        checkpoint_workflow["12"]["class_type"] = "KSamplerAdvanced"
        wf = apply_overrides(checkpoint_workflow, {"cfg": 5.0, "seed": 7, "denoise": 0.5})
        for node_id in ("3", "12"):
            assert wf[node_id].inputs["cfg"] == 5.0
            assert wf[node_id].inputs["seed"] == 7
            assert wf[node_id].inputs["denoise"] == 0.5

    def test_zero_is_applied(self, checkpoint_workflow):
        wf = apply_overrides(checkpoint_workflow, {"seed": 0, "cfg": 0})
        assert wf["3"].inputs["seed"] == 0
        assert wf["3"].inputs["cfg"] == 0

    def test_idempotent(self, checkpoint_workflow):
        overrides = {"steps": 30, "sampler_name": "dpmpp_2m", "scheduler": "karras", "width": 640}
        once = apply_overrides(checkpoint_workflow, overrides)
        twice = apply_overrides(once, overrides)
        assert once == twice


class TestLoaders:
    def test_checkpoint_model(self, checkpoint_workflow):
        wf = apply_overrides(checkpoint_workflow, {"model": "new.safetensors"})
        assert wf["4"].inputs["ckpt_name"] == "new.safetensors"
        assert "unet_name" not in wf["4"].inputs

    def test_unet_model(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"model": "flux1-schnell.safetensors"})
        assert wf["1"].inputs["unet_name"] == "flux1-schnell.safetensors"
        assert "ckpt_name" not in wf["1"].inputs

    def test_vae(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"vae": "other_ae.safetensors"})
        assert wf["3"].inputs["vae_name"] == "other_ae.safetensors"

    def test_dual_clip_sets_first_slot(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"clip": "t5xxl_fp8.safetensors"})
        assert wf["2"].inputs["clip_name1"] == "t5xxl_fp8.safetensors"
        assert wf["2"].inputs["clip_name2"] == "clip_l.safetensors"

    def test_single_clip_loader(self):
        wf = apply_overrides(
            {"1": {"class_type": "CLIPLoader", "inputs": {"clip_name": "a", "type": "sd3"}}}, {"clip": "b"}
        )
        assert wf["1"].inputs["clip_name"] == "b"

    def test_missing_vae_is_noop(self, checkpoint_workflow):
        wf = apply_overrides(checkpoint_workflow, {"vae": "x.safetensors"})
        assert wf.to_dict() == checkpoint_workflow


class TestLatent:
    def test_sets_size_and_batch(self, checkpoint_workflow):
        wf = apply_overrides(checkpoint_workflow, {"width": 768, "height": 640, "batch_size": 4})
        assert wf["5"].inputs == {"width": 768, "height": 640, "batch_size": 4}

    def test_no_latent_node_is_noop(self):
        graph = {"1": {"class_type": "LoadImage", "inputs": {"image": "a.png"}}}
        assert apply_overrides(graph, {"width": 768}).to_dict() == graph


class TestInputImage:
    def test_uploads_then_rewires(self):
        calls = []

        def fake_upload(path):
            calls.append(path)
            return {"filename": "staged_1.png", "path": "/in/staged_1.png", "size": 3}

        graph = {"1": {"class_type": "LoadImage", "inputs": {"image": "old.png"}}}
        wf = apply_overrides(graph, {"input_image": "/tmp/photo.png"}, uploader=fake_upload)
        assert calls == ["/tmp/photo.png"]
        assert wf["1"].inputs["image"] == "staged_1.png"

    def test_upload_failure_propagates(self, checkpoint_workflow):
        def failing_upload(path):
            raise FileNotFoundError(path)

        with pytest.raises(FileNotFoundError):
            apply_overrides(checkpoint_workflow, {"input_image": "/missing.png", "steps": 5}, uploader=failing_upload)


class TestLoraChain:
    """LoRA chains are rebuilt, not appended."""

    def test_replaces_existing_lora(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"lora": [{"name": "a", "strength_model": 0.8, "strength_clip": 0.6}]})
        ids = lora_ids(wf)
        assert len(ids) == 1
        new_id = ids[0]
        assert new_id != "10"
        assert "10" not in wf
        node = wf[new_id]
        assert node.inputs["lora_name"] == "a"
        assert node.inputs["strength_model"] == 0.8
        assert node.inputs["model"] == ["1", 0]
        assert node.inputs["clip"] == ["2", 0]
        assert wf["7"].inputs["model"] == [new_id, 0]
        assert wf["4"].inputs["clip"] == [new_id, 1]
        assert wf["5"].inputs["clip"] == [new_id, 1]

    def test_new_ids_are_fresh_against_original_graph(self, flux_workflow):
        wf = apply_overrides(flux_workflow, {"lora": [{"name": "a"}]})
        assert lora_ids(wf) == ["11"]

    def test_chain_order(self, checkpoint_workflow):
        wf = apply_overrides(with_clip_loader(checkpoint_workflow), {"lora": [{"name": "a"}, {"name": "b"}]})
        a_id, b_id = lora_ids(wf)
        assert wf[a_id].inputs["lora_name"] == "a"
        assert wf[b_id].inputs["lora_name"] == "b"
        assert wf[a_id].inputs["model"] == ["4", 0]
        assert wf[a_id].inputs["clip"] == ["10", 0]
        assert wf[b_id].inputs["model"] == [a_id, 0]
        assert wf[b_id].inputs["clip"] == [a_id, 1]
        assert wf["3"].inputs["model"] == [b_id, 0]
        assert wf["6"].inputs["clip"] == [b_id, 1]
        assert wf["7"].inputs["clip"] == [b_id, 1]

    def test_every_sampler_rewired(self, checkpoint_workflow):
        checkpoint_workflow["12"] = copy.deepcopy(checkpoint_workflow["3"])
        wf = apply_overrides(with_clip_loader(checkpoint_workflow), {"lora": [{"name": "a"}]})
        (lora_id,) = lora_ids(wf)
        assert wf["3"].inputs["model"] == [lora_id, 0]
        assert wf["12"].inputs["model"] == [lora_id, 0]

    def test_default_strengths(self, checkpoint_workflow):
        wf = apply_overrides(with_clip_loader(checkpoint_workflow), {"lora": [{"name": "a"}]})
        (lora_id,) = lora_ids(wf)
        assert wf[lora_id].inputs["strength_model"] == 1.0
        assert wf[lora_id].inputs["strength_clip"] == 1.0

    def test_other_consumers_of_removed_lora_are_repointed(self, flux_workflow):
        flux_workflow["20"] = {"class_type": "ModelSamplingFlux", "inputs": {"model": ["10", 0]}}
        wf = apply_overrides(flux_workflow, {"lora": [{"name": "a"}]})
        (lora_id,) = lora_ids(wf)
        assert wf["20"].inputs["model"] == [lora_id, 0]

    def test_skipped_without_model_loader(self):
        graph = {
            "1": {"class_type": "CLIPLoader", "inputs": {"clip_name": "c"}},
            "2": {"class_type": "LoraLoader", "inputs": {"lora_name": "old"}},
        }
        wf, report = apply_overrides_with_report(graph, {"lora": [{"name": "a"}]})
        assert wf.to_dict() == graph
        assert "lora" in report.skipped

    def test_skipped_without_clip_source(self):
        graph = {"1": {"class_type": "UNETLoader", "inputs": {"unet_name": "m"}}}
        wf = apply_overrides(graph, {"lora": [{"name": "a"}]})
        assert wf.to_dict() == graph

    def test_non_ascii_digit_node_id(self, flux_workflow):
        flux_workflow["\u00b2"] = {"class_type": "PreviewImage", "inputs": {"images": ["8", 0]}}
        wf = apply_overrides(flux_workflow, {"lora": [{"name": "a"}]})
        assert lora_ids(wf) == ["11"]

    def test_empty_list_is_noop(self, flux_workflow):
        assert apply_overrides(flux_workflow, {"lora": []}).to_dict() == flux_workflow

    def test_structural_skip_logged(self, capturing_logger):
        graph = {"1": {"class_type": "UNETLoader", "inputs": {"unet_name": "m"}}}
        apply_overrides(graph, {"lora": [{"name": "a"}]})
        assert any("LoRA override skipped" in m for m in capturing_logger.messages())


class TestLoraSources:
    def test_checkpoint_clip_output_not_used(self, checkpoint_workflow):
        assert find_lora_sources(Workflow.from_dict(checkpoint_workflow)) is None

    def test_checkpoint_only_graph_is_skipped(self, checkpoint_workflow):
        wf, report = apply_overrides_with_report(checkpoint_workflow, {"lora": [{"name": "a"}]})
        assert wf.to_dict() == checkpoint_workflow
        assert report.skipped["lora"] == "no model loader or CLIP loader"

    def test_checkpoint_model_with_clip_loader(self, checkpoint_workflow):
        wf = Workflow.from_dict(with_clip_loader(checkpoint_workflow))
        assert find_lora_sources(wf) == (["4", 0], ["10", 0])

    def test_unet_and_dual_clip(self, flux_workflow):
        assert find_lora_sources(Workflow.from_dict(flux_workflow)) == (["1", 0], ["2", 0])


class TestMalformedInput:
    def test_null_inputs_raise_invalid_workflow(self):
        with pytest.raises(InvalidWorkflowError):
            apply_overrides({"1": {"class_type": "KSampler", "inputs": None}}, {"steps": 4})


class TestOverrideTypes:
    def test_from_dict_ignores_unknown_keys(self):
        overrides = WorkflowOverrides.from_dict({"steps": 4, "bogus": 1, "lora": [{"name": "x", "strength_clip": 0.2}]})
        assert overrides.steps == 4
        assert overrides.lora == [LoraSpec("x", 1.0, 0.2)]
        assert overrides.present() == ["steps", "lora"]

    def test_report(self, checkpoint_workflow):
        _, report = apply_overrides_with_report(checkpoint_workflow, {"steps": 10, "vae": "v", "width": 640})
        assert report.applied == ["steps", "width"]
        assert report.skipped == {"vae": "no VAE loader node"}
        assert report.to_dict()["applied"] == ["steps", "width"]
