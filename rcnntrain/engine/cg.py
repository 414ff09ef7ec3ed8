"""Nonlinear conjugate gradient optimizer.

Polak-Ribiere conjugate directions with a line search that enforces the
Wolfe-Powell conditions through cubic interpolation and extrapolation
(C. E. Rasmussen's ``minimize``). Like ``torch.optim.LBFGS`` it needs a
closure that re-evaluates the loss and fills ``.grad``, and one ``step``
runs a full minimization of up to ``max_iter`` line searches.

Example:
    >>> optimizer = ConjugateGradient([weights], max_iter=50)
    >>> def closure():
    ...     loss, grad = objective(weights)
    ...     weights.grad = grad
    ...     return loss
    >>> optimizer.step(closure)
"""

import math
from typing import Callable, Optional, Tuple

import torch
from torch import Tensor
from torch.optim import Optimizer


def _finite(value: float) -> bool:
    return not (math.isnan(value) or math.isinf(value))


def _div(num: float, den: float) -> float:
    return num / den if den != 0 else math.nan


class ConjugateGradient(Optimizer):
    """Conjugate gradient minimizer driven by a closure.

    Args:
        params: Iterable of tensors to optimize. One param group only.
        max_iter: Maximum number of line searches per ``step``.
        max_eval: Maximum number of closure evaluations per ``step``
            (default: ``max_iter * 1.25``).
        rho: Sufficient-decrease constant of the Wolfe-Powell conditions.
        sig: Curvature constant of the Wolfe-Powell conditions.
        interp: Do not re-evaluate within ``interp`` of the current bracket.
        ext: Extrapolate at most ``ext`` times the current step.
        max_ls: Maximum closure evaluations per line search.
        ratio: Maximum allowed slope ratio when rescaling the next step.
    """

    def __init__(
        self,
        params,
        max_iter: int = 20,
        max_eval: Optional[int] = None,
        rho: float = 0.01,
        sig: float = 0.5,
        interp: float = 0.1,
        ext: float = 3.0,
        max_ls: int = 20,
        ratio: float = 100.0,
    ):
        if max_eval is None:
            max_eval = int(max_iter * 1.25)
        defaults = dict(
            max_iter=max_iter,
            max_eval=max_eval,
            rho=rho,
            sig=sig,
            interp=interp,
            ext=ext,
            max_ls=max_ls,
            ratio=ratio,
        )
        super().__init__(params, defaults)

        if len(self.param_groups) != 1:
            raise ValueError("ConjugateGradient doesn't support per-parameter options (parameter groups)")
        self._params = self.param_groups[0]["params"]

    def _gather_flat_grad(self) -> Tensor:
        views = []
        for p in self._params:
            if p.grad is None:
                views.append(p.new_zeros(p.numel()))
            else:
                views.append(p.grad.reshape(-1))
        return torch.cat(views, 0).clone()

    def _gather_flat_params(self) -> Tensor:
        return torch.cat([p.detach().reshape(-1) for p in self._params], 0).clone()

    def _set_flat_params(self, flat: Tensor) -> None:
        offset = 0
        for p in self._params:
            n = p.numel()
            p.copy_(flat[offset:offset + n].view_as(p))
            offset += n

    def _add_direction(self, step: float, direction: Tensor) -> None:
        offset = 0
        for p in self._params:
            n = p.numel()
            p.add_(direction[offset:offset + n].view_as(p), alpha=step)
            offset += n

    def _evaluate(self, closure: Callable) -> Tuple[float, Tensor]:
        with torch.enable_grad():
            loss = float(closure())
        return loss, self._gather_flat_grad()

    @torch.no_grad()
    def step(self, closure: Callable) -> float:
        """Run one conjugate gradient minimization.

        Args:
            closure: Re-evaluates the model, sets ``.grad`` and returns the loss.

        Returns:
            The loss at the starting point.
        """
        if closure is None:
            raise ValueError("ConjugateGradient requires a closure")

        group = self.param_groups[0]
        rho = group["rho"]
        sig = group["sig"]
        interp = group["interp"]
        ext = group["ext"]
        max_ls = group["max_ls"]
        ratio = group["ratio"]
        max_eval = abs(group["max_eval"])

        state = self.state[self._params[0]]
        state.setdefault("func_evals", 0)
        state.setdefault("n_iter", 0)

        f1, df1 = self._evaluate(closure)
        orig_loss = f1
        evals = 1

        s = -df1
        d1 = -s.dot(s).item()
        z1 = 1.0 / (1.0 - d1)
        ls_failed = False

        while evals < max_eval:
            x0 = self._gather_flat_params()
            f0, df0 = f1, df1.clone()

            self._add_direction(z1, s)
            f2, df2 = self._evaluate(closure)
            evals += 1
            d2 = df2.dot(s).item()
            f3, d3, z3 = f1, d1, -z1
            m = min(max_ls, max_eval - evals)
            success = False
            limit = -1.0

            while True:
                while (f2 > f1 + z1 * rho * d1 or d2 > -sig * d1) and m > 0:
                    limit = z1
                    if f2 > f1:
                        z2 = z3 - _div(0.5 * d3 * z3 * z3, d3 * z3 + f2 - f3)
                    else:
                        a = 6 * _div(f2 - f3, z3) + 3 * (d2 + d3)
                        b = 3 * (f3 - f2) - z3 * (d3 + 2 * d2)
                        disc = b * b - a * d2 * z3 * z3
                        z2 = _div(math.sqrt(disc) - b, a) if disc >= 0 else math.nan
                    if not _finite(z2):
                        z2 = z3 / 2
                    z2 = max(min(z2, interp * z3), (1 - interp) * z3)
                    z1 += z2
                    self._add_direction(z2, s)
                    f2, df2 = self._evaluate(closure)
                    evals += 1
                    m -= 1
                    d2 = df2.dot(s).item()
                    z3 -= z2

                if f2 > f1 + z1 * rho * d1 or d2 > -sig * d1:
                    break
                if d2 > sig * d1:
                    success = True
                    break
                if m == 0:
                    break

                a = 6 * _div(f2 - f3, z3) + 3 * (d2 + d3)
                b = 3 * (f3 - f2) - z3 * (d3 + 2 * d2)
                disc = b * b - a * d2 * z3 * z3
                denom = b + math.sqrt(disc) if disc >= 0 else math.nan
                z2 = _div(-d2 * z3 * z3, denom)

                if not _finite(z2) or z2 < 0:
                    z2 = z1 * (ext - 1) if limit < -0.5 else (limit - z1) / 2
                elif limit > -0.5 and z2 + z1 > limit:
                    z2 = (limit - z1) / 2
                elif limit < -0.5 and z2 + z1 > z1 * ext:
                    z2 = z1 * (ext - 1)
                elif z2 < -z3 * interp:
                    z2 = -z3 * interp
                elif limit > -0.5 and z2 < (limit - z1) * (1 - interp):
                    z2 = (limit - z1) * (1 - interp)

                f3, d3, z3 = f2, d2, -z2
                z1 += z2
                self._add_direction(z2, s)
                f2, df2 = self._evaluate(closure)
                evals += 1
                m -= 1
                d2 = df2.dot(s).item()

            if success:
                f1 = f2
                denom = df1.dot(df1).item()
                beta = (df2.dot(df2).item() - df2.dot(df1).item()) / denom if denom > 0 else 0.0
                s = beta * s - df2
                df1 = df2
                d2 = df1.dot(s).item()
                if d2 > 0:
                    s = -df1
                    d2 = -s.dot(s).item()
                z1 = z1 * min(ratio, d1 / (d2 - 1e-320))
                d1 = d2
                ls_failed = False
                state["n_iter"] += 1
            else:
                self._set_flat_params(x0)
                f1, df1 = f0, df0
                if ls_failed or evals >= max_eval:
                    break
                s = -df1
                d1 = -s.dot(s).item()
                z1 = 1.0 / (1.0 - d1)
                ls_failed = True

            if state["n_iter"] >= group["max_iter"]:
                break

        state["func_evals"] += evals
        return orig_loss
