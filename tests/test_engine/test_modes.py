"""
Tests for the flat parameter store and training modes.

This module tests that module parameters alias the flat buffers, that
frozen ranges never change and that the frozen proposal copy is owned.
"""

import pytest
import torch
import torch.nn as nn

from rcnntrain.engine.modes import ParameterStore, TrainingMode, TrainingModeController
from rcnntrain.engine.optimizer import build_optimizer, select_optimizer


def make_store(model):
    return ParameterStore({"pnet": model.pnet, "cnet": model.cnet})


class TestTrainingMode:
    """Tests for TrainingMode parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("onlyPnet", TrainingMode.ONLY_PNET),
        ("onlyCnet", TrainingMode.ONLY_CNET),
        ("both", TrainingMode.BOTH),
        (TrainingMode.BOTH, TrainingMode.BOTH),
    ])
    def test_parse(self, value, expected):
        assert TrainingMode.parse(value) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="training mode"):
            TrainingMode.parse("onlyRnet")


class TestParameterStore:
    """Tests for ParameterStore."""

    def test_ranges_cover_both_networks(self, toy_model):
        store = make_store(toy_model)

        pnet_size = sum(p.numel() for p in toy_model.pnet.parameters())
        cnet_size = sum(p.numel() for p in toy_model.cnet.parameters())

        assert store.ranges == {"pnet": (0, pnet_size), "cnet": (pnet_size, pnet_size + cnet_size)}
        assert store.weights.numel() == pnet_size + cnet_size
        assert store.gradient.shape == store.weights.shape

    def test_weights_preserved(self, model_factory):
        torch.manual_seed(3)
        model = model_factory()
        expected = torch.cat([p.detach().reshape(-1).clone() for p in model.pnet.parameters()])

        store = make_store(model)

        assert torch.equal(store.view("pnet"), expected)

    def test_parameters_alias_flat_weights(self, toy_model):
        """Writing the flat buffer changes the module parameters."""
        store = make_store(toy_model)

        store.view("cnet").fill_(0.25)

        assert torch.all(toy_model.cnet.weight == 0.25)
        assert torch.all(toy_model.cnet.bias == 0.25)

    def test_backward_accumulates_into_flat_gradient(self, toy_model):
        """Autograd writes gradients into the flat gradient buffer."""
        store = make_store(toy_model)
        store.zero_grad()

        out = toy_model.cnet(toy_model.pnet(torch.ones(2, 4)))
        out.sum().backward()

        assert store.grad_view("pnet").abs().sum() > 0
        assert store.grad_view("cnet").abs().sum() > 0
        assert toy_model.cnet.weight.grad.data_ptr() == store.grad_view("cnet").data_ptr()

    def test_shared_parameter_rejected(self):
        shared = nn.Linear(2, 2)
        with pytest.raises(ValueError, match="shared"):
            ParameterStore({"pnet": shared, "cnet": nn.Sequential(shared)})

    def test_load_range(self, toy_model):
        store = make_store(toy_model)
        values = torch.arange(store.numel("pnet"), dtype=torch.float32)

        store.load_range("pnet", values)

        assert torch.equal(store.view("pnet"), values)

    def test_load_range_size_mismatch(self, toy_model):
        store = make_store(toy_model)

        with pytest.raises(ValueError, match="Cannot load"):
            store.load_range("cnet", torch.zeros(store.numel("cnet") + 1))

    def test_zero_range(self, toy_model):
        store = make_store(toy_model)
        store.gradient.fill_(1.0)

        store.zero_range("pnet")

        assert torch.all(store.grad_view("pnet") == 0)
        assert torch.all(store.grad_view("cnet") == 1)


class TestTrainingModeController:
    """Tests for TrainingModeController."""

    @pytest.mark.parametrize("mode,trainable,frozen", [
        ("both", ("pnet", "cnet"), ()),
        ("onlyPnet", ("pnet",), ("cnet",)),
        ("onlyCnet", ("cnet",), ("pnet",)),
    ])
    def test_trainable_networks(self, mode, trainable, frozen):
        controller = TrainingModeController(mode)

        assert controller.trainable_networks == trainable
        assert controller.frozen_networks == frozen

    def test_scoring_and_frozen_proposal(self):
        assert not TrainingModeController("onlyPnet").scores_detections
        assert TrainingModeController("onlyCnet").scores_detections
        assert TrainingModeController("onlyCnet").needs_frozen_proposal
        assert not TrainingModeController("both").needs_frozen_proposal

    def test_trainable_parameters_stable(self, toy_model):
        store = make_store(toy_model)
        controller = TrainingModeController("both")

        first = controller.trainable_parameters(store)
        second = controller.trainable_parameters(store)

        assert first is second
        assert len(first) == 2

    def test_attach_gradients_zeroes_frozen_range(self, toy_model):
        store = make_store(toy_model)
        controller = TrainingModeController("onlyPnet")
        store.gradient.fill_(1.0)

        controller.attach_gradients(store)
        (param,) = controller.trainable_parameters(store)

        assert torch.all(store.grad_view("cnet") == 0)
        assert torch.equal(param.grad, store.grad_view("pnet"))

    def test_frozen_proposal_is_owned_copy(self, toy_model):
        store = make_store(toy_model)
        controller = TrainingModeController("onlyCnet")

        frozen = controller.freeze_proposal_network(toy_model.pnet)
        before = frozen.weight.detach().clone()
        store.view("pnet").fill_(7.0)

        assert torch.equal(frozen.weight, before)
        assert not any(p.requires_grad for p in frozen.parameters())

    @pytest.mark.parametrize("name", ["sgd", "adam", "rmsprop"])
    def test_only_pnet_keeps_cnet_bit_identical(self, toy_model, name):
        """Classification weights never change under onlyPnet."""
        store = make_store(toy_model)
        controller = TrainingModeController("onlyPnet")
        optimizer = build_optimizer(select_optimizer(name, lr=0.1),
                                    controller.trainable_parameters(store))
        cnet_before = store.view("cnet").clone()
        pnet_before = store.view("pnet").clone()

        def closure():
            store.gradient.copy_(store.weights - 1.0)
            controller.attach_gradients(store)
            return 0.5 * (store.weights - 1.0).pow(2).sum().item()

        for _ in range(5):
            optimizer.step(closure)

        assert torch.equal(store.view("cnet"), cnet_before)
        assert torch.equal(toy_model.cnet.weight.detach().reshape(-1),
                           cnet_before[:toy_model.cnet.weight.numel()])
        assert not torch.equal(store.view("pnet"), pnet_before)
