"""
Tests for the conjugate gradient optimizer.
"""

import pytest
import torch

from rcnntrain.engine.cg import ConjugateGradient


def make_quadratic(dim=5):
    """Ill-conditioned quadratic 0.5 * x^T A x - b^T x in float64."""
    scales = torch.linspace(1.0, 10.0, dim, dtype=torch.float64)
    b = torch.arange(1, dim + 1, dtype=torch.float64)
    solution = b / scales

    def loss_and_grad(x):
        grad = scales * x - b
        loss = 0.5 * (scales * x * x).sum() - (b * x).sum()
        return loss.item(), grad

    return loss_and_grad, solution


class TestConjugateGradient:
    """Tests for ConjugateGradient.step."""

    def test_minimizes_quadratic(self):
        """CG reaches the minimum of a quadratic."""
        loss_and_grad, solution = make_quadratic()
        x = torch.zeros(5, dtype=torch.float64)
        optimizer = ConjugateGradient([x], max_iter=50)

        def closure():
            loss, grad = loss_and_grad(x)
            x.grad = grad
            return loss

        optimizer.step(closure)

        assert torch.allclose(x, solution, atol=1e-4)

    def test_returns_initial_loss(self):
        loss_and_grad, _ = make_quadratic()
        x = torch.zeros(5, dtype=torch.float64)
        optimizer = ConjugateGradient([x], max_iter=5)

        def closure():
            loss, grad = loss_and_grad(x)
            x.grad = grad
            return loss

        assert optimizer.step(closure) == pytest.approx(0.0)

    def test_respects_evaluation_budget(self):
        """No more than max_eval closure calls per step."""
        loss_and_grad, _ = make_quadratic()
        x = torch.zeros(5, dtype=torch.float64)
        optimizer = ConjugateGradient([x], max_iter=100, max_eval=4)
        calls = []

        def closure():
            calls.append(1)
            loss, grad = loss_and_grad(x)
            x.grad = grad
            return loss

        optimizer.step(closure)

        assert len(calls) <= 4
        assert optimizer.state[x]["func_evals"] == len(calls)

    def test_multiple_tensors(self):
        """Parameters spread over several tensors are optimized jointly."""
        loss_and_grad, solution = make_quadratic(4)
        a = torch.zeros(2, dtype=torch.float64)
        b = torch.zeros(2, dtype=torch.float64)
        optimizer = ConjugateGradient([a, b], max_iter=50)

        def closure():
            loss, grad = loss_and_grad(torch.cat([a, b]))
            a.grad = grad[:2].clone()
            b.grad = grad[2:].clone()
            return loss

        optimizer.step(closure)

        assert torch.allclose(torch.cat([a, b]), solution, atol=1e-4)

    def test_zero_gradient_does_not_move(self):
        """A flat objective terminates and leaves the parameters unchanged."""
        x = torch.tensor([1.0, -2.0, 3.0], dtype=torch.float64)
        start = x.clone()
        optimizer = ConjugateGradient([x], max_iter=1000)

        def closure():
            x.grad = torch.zeros_like(x)
            return 1.0

        optimizer.step(closure)

        assert torch.equal(x, start)
        assert optimizer.state[x]["func_evals"] <= 1250

    def test_requires_closure(self):
        x = torch.zeros(2)
        optimizer = ConjugateGradient([x])

        with pytest.raises(ValueError, match="closure"):
            optimizer.step(None)

    def test_single_param_group_only(self):
        with pytest.raises(ValueError, match="parameter groups"):
            ConjugateGradient([{"params": [torch.zeros(1)]}, {"params": [torch.zeros(1)]}])
