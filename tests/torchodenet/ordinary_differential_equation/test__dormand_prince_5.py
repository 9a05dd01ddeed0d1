import math

import pytest
import torch
from tensordict import TensorDict

from torchodenet.ordinary_differential_equation import (
    DivergedIntegration,
    MaxStepsExceeded,
    ShapeMismatch,
    SolverConfig,
    StepCounter,
    StepListener,
    StepSizeUnderflow,
    dormand_prince_54,
    integrate,
)

TIGHT = SolverConfig(abs_tol=1e-6, rel_tol=1e-6)


def decay(t, y):
    return -y


def oscillator(t, y):
    x, v = y[..., 0], y[..., 1]
    return torch.stack([v, -x], dim=-1)


class RecordingListener(StepListener):
    def __init__(self):
        self.spans = []
        self.steps = []
        self.n_done = 0

    def begin(self, t_span, y0):
        self.spans.append(t_span)

    def step(self, result):
        self.steps.append(result)

    def done(self):
        self.n_done += 1


class TestDormandPrince54Basic:
    def test_exponential_decay(self):
        """dy/dt = -y, y(0) = 1 => y(1) = exp(-1)"""
        y0 = torch.tensor([1.0], dtype=torch.float64)
        y1 = integrate(decay, (0.0, 1.0), y0, config=TIGHT)

        assert abs(y1.item() - math.exp(-1.0)) < 1e-4

    def test_exponential_decay_long_span(self):
        y0 = torch.tensor([1.0], dtype=torch.float64)
        y1 = integrate(decay, (0.0, 5.0), y0, config=TIGHT)

        expected = torch.exp(torch.tensor([-5.0], dtype=torch.float64))
        assert torch.allclose(y1, expected, rtol=1e-4)

    def test_backward_in_time(self):
        y1 = torch.tensor([math.exp(-1.0)], dtype=torch.float64)
        y0 = integrate(decay, (1.0, 0.0), y1, config=TIGHT)

        assert torch.allclose(y0, torch.tensor([1.0], dtype=torch.float64), atol=1e-4)

    def test_harmonic_oscillator(self):
        y0 = torch.tensor([1.0, 0.0], dtype=torch.float64)
        y1 = integrate(oscillator, (0.0, 2 * math.pi), y0, config=TIGHT)

        # One period returns to the initial state
        assert torch.allclose(y1, y0, atol=1e-4)

    def test_time_dependent(self):
        """dy/dt = cos(t), y(0) = 0 => y(t) = sin(t)"""
        y0 = torch.tensor([0.0], dtype=torch.float64)
        y1 = integrate(
            lambda t, y: torch.cos(t) * torch.ones_like(y), (0.0, 2.0), y0, config=TIGHT
        )

        assert abs(y1.item() - math.sin(2.0)) < 1e-5

    def test_tensor_time_span(self):
        y0 = torch.tensor([1.0], dtype=torch.float64)
        t_span = (torch.tensor(0.0), torch.tensor(1.0))
        y1 = integrate(decay, t_span, y0, config=TIGHT)

        assert abs(y1.item() - math.exp(-1.0)) < 1e-4

    def test_batched_state(self):
        y0 = torch.tensor([[1.0, 0.0], [0.0, 1.0], [2.0, 2.0]], dtype=torch.float64)
        y1 = integrate(oscillator, (0.0, math.pi), y0, config=TIGHT)

        assert y1.shape == y0.shape
        assert torch.allclose(y1, -y0, atol=1e-4)

    def test_complex_state(self):
        """dy/dt = -i*y, y(0) = 1 => y(pi) = -1"""
        y0 = torch.tensor([1.0 + 0j], dtype=torch.complex128)
        y1 = integrate(lambda t, y: -1j * y, (0.0, math.pi), y0, config=TIGHT)

        assert torch.allclose(
            y1, torch.tensor([-1.0 + 0j], dtype=torch.complex128), atol=1e-4
        )

    def test_module_dynamics(self):
        class Decay(torch.nn.Module):
            def forward(self, t, y):
                return -2.0 * y

        y0 = torch.tensor([1.0], dtype=torch.float64)
        y1 = integrate(Decay(), (0.0, 1.0), y0, config=TIGHT)

        assert abs(y1.item() - math.exp(-2.0)) < 1e-4

    def test_does_not_modify_y0(self):
        y0 = torch.tensor([1.0, 2.0], dtype=torch.float64)
        integrate(decay, (0.0, 1.0), y0)

        assert torch.equal(y0, torch.tensor([1.0, 2.0], dtype=torch.float64))

    def test_gradient_through_solver(self):
        theta = torch.tensor(1.0, dtype=torch.float64, requires_grad=True)
        y0 = torch.tensor([1.0], dtype=torch.float64)

        y1 = integrate(lambda t, y: -theta * y, (0.0, 1.0), y0, config=TIGHT)
        y1.sum().backward()

        # d/dtheta exp(-theta) at theta = 1
        assert abs(theta.grad.item() + math.exp(-1.0)) < 1e-3


class TestDormandPrince54EmptySpan:
    def test_returns_copy_without_evaluating(self):
        def f(t, y):
            raise AssertionError("f must not be evaluated")

        y0 = torch.tensor([1.0, 2.0])
        y1 = integrate(f, (0.5, 0.5), y0)

        assert torch.equal(y1, y0)
        assert y1 is not y0

    def test_listeners_notified(self):
        solver = dormand_prince_54()
        listener = RecordingListener()
        solver.add_listener(listener)

        solver.integrate(decay, (1.0, 1.0), torch.ones(1))

        assert listener.spans == [(1.0, 1.0)]
        assert listener.steps == []
        assert listener.n_done == 1


class TestDormandPrince54Steps:
    def test_accepted_errors_below_one(self):
        solver = dormand_prince_54(TIGHT)
        listener = RecordingListener()
        solver.add_listener(listener)

        solver.integrate(oscillator, (0.0, 10.0), torch.tensor([1.0, 0.0]))

        assert len(listener.steps) > 1
        assert all(step.error < 1.0 for step in listener.steps)

    def test_steps_are_contiguous_and_end_on_t1(self):
        solver = dormand_prince_54()
        listener = RecordingListener()
        solver.add_listener(listener)

        y1 = solver.integrate(decay, (0.0, 3.0), torch.tensor([1.0]))

        steps = listener.steps
        assert steps[0].t_start == 0.0
        assert steps[-1].t_end == 3.0
        for previous, current in zip(steps[:-1], steps[1:]):
            assert previous.t_end == current.t_start
            assert torch.equal(previous.y_end, current.y_start)
        assert torch.equal(steps[-1].y_end, y1)

    def test_backward_steps_are_negative(self):
        solver = dormand_prince_54()
        listener = RecordingListener()
        solver.add_listener(listener)

        solver.integrate(decay, (2.0, 0.0), torch.tensor([1.0]))

        assert all(step.h < 0 for step in listener.steps)
        assert listener.steps[-1].t_end == 0.0

    def test_stage_cache_shape(self):
        solver = dormand_prince_54()
        listener = RecordingListener()
        solver.add_listener(listener)

        solver.integrate(oscillator, (0.0, 1.0), torch.tensor([1.0, 0.0]))

        assert listener.steps[0].k.shape == (7, 2)

    def test_max_step_respected(self):
        solver = dormand_prince_54(SolverConfig(max_step=0.1))
        listener = RecordingListener()
        solver.add_listener(listener)

        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]))

        assert all(abs(step.h) <= 0.1 + 1e-12 for step in listener.steps)
        assert len(listener.steps) >= 10

    def test_function_evaluation_count(self):
        solver = dormand_prince_54()
        solver.integrate(oscillator, (0.0, 5.0), torch.tensor([1.0, 0.0]))

        stats = solver.stats
        attempts = stats.n_steps + stats.n_rejected
        # f(y0), one evaluation for the initial step, 6 new stages per attempt
        assert stats.n_function_evals == 2 + 6 * attempts

    def test_tighter_tolerance_takes_more_steps(self):
        loose = dormand_prince_54(SolverConfig(abs_tol=1e-3, rel_tol=1e-3))
        tight = dormand_prince_54(SolverConfig(abs_tol=1e-9, rel_tol=1e-9))
        y0 = torch.tensor([1.0, 0.0], dtype=torch.float64)

        loose.integrate(oscillator, (0.0, 10.0), y0)
        tight.integrate(oscillator, (0.0, 10.0), y0)

        assert tight.stats.n_steps > loose.stats.n_steps

    def test_clear_listeners(self):
        solver = dormand_prince_54()
        first, second = RecordingListener(), RecordingListener()
        solver.add_listener(first, second)
        solver.clear_listeners(first)

        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]))
        assert first.n_done == 0
        assert second.n_done == 1

        solver.clear_listeners()
        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]))
        assert second.n_done == 1

    def test_call_listeners(self):
        solver = dormand_prince_54()
        registered, local = RecordingListener(), RecordingListener()
        solver.add_listener(registered)

        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]), listeners=[local])
        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]))

        assert local.n_done == 1
        assert len(local.steps) > 0
        assert registered.n_done == 2
        assert solver._listeners == [registered]


class TestDormandPrince54Errors:
    def test_step_size_underflow(self):
        def f(t, y):
            if t > 0.5:
                return torch.full_like(y, float("nan"))
            return -y

        with pytest.raises(StepSizeUnderflow, match="minimum step size"):
            integrate(f, (0.0, 1.0), torch.tensor([1.0]), config=SolverConfig(min_step=1e-4))

    def test_max_steps_exceeded(self):
        with pytest.raises(MaxStepsExceeded, match="3"):
            integrate(
                oscillator,
                (0.0, 100.0),
                torch.tensor([1.0, 0.0]),
                config=TIGHT,
                max_steps=3,
            )

    def test_nan_guard_derivative(self):
        def f(t, y):
            return y * float("nan")

        with pytest.raises(DivergedIntegration, match="derivative"):
            integrate(f, (0.0, 1.0), torch.tensor([1.0]), nan_guard=True)

    def test_nan_guard_state(self):
        with pytest.raises(DivergedIntegration, match="state"):
            integrate(
                decay, (0.0, 1.0), torch.tensor([float("inf")]), nan_guard=True
            )

    def test_nan_guard_off_by_default(self):
        def f(t, y):
            return y * float("nan")

        # Non-finite errors shrink the step until the minimum is reached
        with pytest.raises(StepSizeUnderflow):
            integrate(f, (0.0, 1.0), torch.tensor([1.0]))

    def test_shape_mismatch(self):
        def f(t, y):
            return torch.zeros(3)

        with pytest.raises(ShapeMismatch, match="Derivative shape"):
            integrate(f, (0.0, 1.0), torch.ones(2))


class TestDormandPrince54TensorDict:
    def test_tensordict_state(self):
        def f(t, state):
            return TensorDict(
                {"x": state["v"], "v": -state["x"]}, batch_size=state.batch_size
            )

        y0 = TensorDict(
            {
                "x": torch.tensor([1.0], dtype=torch.float64),
                "v": torch.tensor([0.0], dtype=torch.float64),
            },
            batch_size=[],
        )
        y1 = integrate(f, (0.0, math.pi / 2), y0, config=TIGHT)

        assert isinstance(y1, TensorDict)
        assert torch.allclose(
            y1["x"], torch.tensor([0.0], dtype=torch.float64), atol=1e-4
        )
        assert torch.allclose(
            y1["v"], torch.tensor([-1.0], dtype=torch.float64), atol=1e-4
        )

    def test_nested_tensordict_state(self):
        def f(t, state):
            return TensorDict(
                {"inner": {"a": -state["inner", "a"]}, "b": torch.zeros_like(state["b"])},
                batch_size=state.batch_size,
            )

        y0 = TensorDict(
            {
                "inner": {"a": torch.ones(2, 3, dtype=torch.float64)},
                "b": torch.full((2,), 5.0, dtype=torch.float64),
            },
            batch_size=[2],
        )
        y1 = integrate(f, (0.0, 1.0), y0, config=TIGHT)

        assert y1["inner", "a"].shape == (2, 3)
        assert torch.allclose(y1["b"], torch.full((2,), 5.0, dtype=torch.float64))
        assert torch.allclose(
            y1["inner", "a"],
            torch.full((2, 3), math.exp(-1.0), dtype=torch.float64),
            atol=1e-4,
        )


class TestStepCounter:
    def test_counts_match_stats(self):
        solver = dormand_prince_54()
        counter = StepCounter()
        solver.add_listener(counter)

        solver.integrate(oscillator, (0.0, 3.0), torch.tensor([1.0, 0.0]))

        assert counter.n_steps == solver.stats.n_steps
        assert counter.n_integrations == 1

    def test_totals_and_callback(self):
        seen = []
        solver = dormand_prince_54()
        counter = StepCounter(on_done=seen.append)
        solver.add_listener(counter)

        solver.integrate(decay, (0.0, 1.0), torch.tensor([1.0]))
        solver.integrate(decay, (0.0, 2.0), torch.tensor([1.0]))

        assert len(seen) == 2
        assert counter.n_steps == seen[-1]
        assert counter.total_steps == sum(seen)
        assert counter.mean_steps == pytest.approx(sum(seen) / 2)

    def test_mean_before_any_integration(self):
        assert StepCounter().mean_steps == 0.0
