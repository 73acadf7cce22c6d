"""Tests for the scheduler family: schedules, steps, noising and seeding."""
import math

import pytest
import torch

from latentforge.core.diffusion.scheduler import betas_for_schedule, create_scheduler
from latentforge.core.errors import ConfigurationError, ScheduleContractError, UnsupportedVariantError
from latentforge.core.options import SchedulerOptions, SchedulerType

SIGMA_VARIANTS = [SchedulerType.EULER, SchedulerType.EULER_ANCESTRAL, SchedulerType.KDPM2]


def make(scheduler_type, steps=10, **kwargs):
    options = SchedulerOptions(scheduler_type=scheduler_type, seed=kwargs.pop("seed", 7), **kwargs)
    scheduler = create_scheduler(options)
    scheduler.set_timesteps(steps)
    return scheduler


# ==================== Schedule shape ====================

class TestScheduleShape:
    @pytest.mark.parametrize("scheduler_type", list(SchedulerType))
    def test_timesteps_strictly_decreasing_and_sigmas_end_in_zero(self, scheduler_type):
        scheduler = make(scheduler_type, steps=10)
        ts = scheduler.timesteps
        assert len(ts) == 10
        assert all(a > b for a, b in zip(ts, ts[1:]))
        assert len(scheduler.sigmas) == 11
        assert float(scheduler.sigmas[-1]) == 0.0

    @pytest.mark.parametrize("steps", [1, 2, 5, 6])
    def test_kdpm2_loop_count_equals_steps(self, steps):
        scheduler = make(SchedulerType.KDPM2, steps=steps)
        assert len(scheduler.timesteps) == steps
        assert len(scheduler.sigmas) == steps + 1

    def test_kdpm2_midpoints_sit_between_base_sigmas(self):
        scheduler = make(SchedulerType.KDPM2, steps=5)
        s = [float(v) for v in scheduler.sigmas]
        # [s0, m0, s1, m1, s2, 0]
        assert s[0] > s[1] > s[2]
        assert s[2] > s[3] > s[4]
        assert s[1] == pytest.approx(math.sqrt(s[0] * s[2]), rel=1e-5)

    def test_kdpm2_even_steps_end_on_base_points(self):
        scheduler = make(SchedulerType.KDPM2, steps=4)
        # [s0, m0, s1, s2, 0] over base timesteps [999, 500, 0]
        assert scheduler.timesteps[0] == 999
        assert scheduler.timesteps[2:] == [500, 0]
        assert float(scheduler.sigmas[2]) == pytest.approx(scheduler.sigma_for_timestep(500), rel=1e-5)
        assert not scheduler.is_midpoint(3)

    def test_linspace_single_step(self):
        assert make(SchedulerType.EULER, steps=1).timesteps == [999]

    def test_euler_linspace_timesteps(self):
        assert make(SchedulerType.EULER, steps=10).timesteps == [999, 888, 777, 666, 555, 444, 333, 222, 111, 0]

    def test_trailing_spacing(self):
        scheduler = make(SchedulerType.EULER_ANCESTRAL, steps=2, timestep_spacing="trailing")
        assert scheduler.timesteps == [999, 499]

    def test_leading_spacing_with_offset(self):
        scheduler = make(SchedulerType.DDIM, steps=10, timestep_spacing="leading", steps_offset=1)
        assert scheduler.timesteps == [901, 801, 701, 601, 501, 401, 301, 201, 101, 1]

    def test_lcm_skipping_schedule(self):
        assert make(SchedulerType.LCM, steps=4).timesteps == [999, 759, 519, 279]

    def test_lcm_too_many_steps(self):
        with pytest.raises(ConfigurationError):
            make(SchedulerType.LCM, steps=51)

    def test_flow_match_starts_at_full_noise(self):
        scheduler = make(SchedulerType.FLOW_MATCH_EULER, steps=28)
        assert scheduler.timesteps[0] == 1000
        assert float(scheduler.sigmas[0]) == pytest.approx(1.0)

    def test_flow_match_28_steps(self):
        scheduler = make(SchedulerType.FLOW_MATCH_EULER, steps=28)
        s = [float(v) for v in scheduler.sigmas]
        assert len(s) == 29
        assert s[0] > s[27] > s[28] == 0.0

    def test_flow_match_high_step_count_stays_strictly_decreasing(self):
        ts = make(SchedulerType.FLOW_MATCH_EULER, steps=200).timesteps
        assert len(ts) == 200
        assert all(a > b for a, b in zip(ts, ts[1:]))

    @pytest.mark.parametrize("steps", [500, 1000])
    def test_flow_match_repeated_timesteps_rejected(self, steps):
        with pytest.raises(ConfigurationError, match="repeated timesteps"):
            make(SchedulerType.FLOW_MATCH_EULER, steps=steps)

    def test_flow_match_shift_pushes_sigmas_up(self):
        low = make(SchedulerType.FLOW_MATCH_EULER, steps=10, shift=1.0)
        high = make(SchedulerType.FLOW_MATCH_EULER, steps=10, shift=3.0)
        assert float(high.sigmas[5]) > float(low.sigmas[5])

    def test_more_steps_than_training_schedule(self):
        scheduler = create_scheduler(SchedulerOptions(scheduler_type=SchedulerType.EULER, train_timesteps=10, inference_steps=5))
        with pytest.raises(ConfigurationError):
            scheduler.set_timesteps(20)

    def test_zero_steps_rejected(self):
        scheduler = create_scheduler(SchedulerOptions(scheduler_type=SchedulerType.EULER))
        with pytest.raises(ConfigurationError):
            scheduler.set_timesteps(0)

    def test_unknown_beta_schedule(self):
        with pytest.raises(ConfigurationError):
            betas_for_schedule("cubic", 0.00085, 0.012, 1000)

    def test_unknown_scheduler_type(self):
        with pytest.raises(UnsupportedVariantError):
            create_scheduler(SchedulerOptions(scheduler_type="heun"))


# ==================== Stepping ====================

class TestStep:
    @pytest.mark.parametrize("scheduler_type", SIGMA_VARIANTS)
    def test_exact_noise_prediction_recovers_clean_latent(self, scheduler_type):
        scheduler = make(scheduler_type, steps=6)
        gen = torch.Generator().manual_seed(0)
        x0 = torch.randn(1, 4, 8, 8, generator=gen)
        sample = x0 + torch.randn(1, 4, 8, 8, generator=gen) * float(scheduler.sigmas[0])

        for i, t in enumerate(scheduler.timesteps):
            sigma = float(scheduler.sigmas[i])
            eps = (sample - x0) / sigma
            sample = scheduler.step(eps, t, sample).prev_sample
        assert torch.allclose(sample, x0, atol=1e-3)

    def test_flow_match_exact_velocity_recovers_clean_latent(self):
        scheduler = make(SchedulerType.FLOW_MATCH_EULER, steps=8)
        gen = torch.Generator().manual_seed(0)
        x0 = torch.randn(1, 16, 8, 8, generator=gen)
        sample = torch.randn(1, 16, 8, 8, generator=gen)
        for i, t in enumerate(scheduler.timesteps):
            v = (sample - x0) / float(scheduler.sigmas[i])
            sample = scheduler.step(v, t, sample).prev_sample
        assert torch.allclose(sample, x0, atol=1e-3)

    def test_kdpm2_even_tail_takes_euler_steps(self):
        scheduler = make(SchedulerType.KDPM2, steps=4)
        ts, sigmas = scheduler.timesteps, [float(v) for v in scheduler.sigmas]
        eps = torch.full((1, 4, 8, 8), 0.25)
        sample = torch.ones(1, 4, 8, 8)
        for t in ts[:2]:
            sample = scheduler.step(eps, t, sample).prev_sample
        # s1 -> s2 and s2 -> 0 each move by eps * (sigma_next - sigma) from the current sample
        for i in (2, 3):
            expected = sample + eps * (sigmas[i + 1] - sigmas[i])
            sample = scheduler.step(eps, ts[i], sample).prev_sample
            assert torch.allclose(sample, expected, atol=1e-6)

    def test_zero_prediction_leaves_sample_unchanged(self):
        scheduler = make(SchedulerType.EULER, steps=10)
        sample = torch.randn(1, 4, 8, 8)
        result = scheduler.step(torch.zeros_like(sample), scheduler.timesteps[0], sample)
        assert torch.allclose(result.prev_sample, sample)
        assert torch.allclose(result.denoised, sample)

    @pytest.mark.parametrize("scheduler_type", list(SchedulerType))
    def test_step_keeps_sample_dtype(self, scheduler_type):
        scheduler = make(scheduler_type, steps=4)
        sample = torch.randn(1, 4, 8, 8).half()
        result = scheduler.step(torch.randn(1, 4, 8, 8).half(), scheduler.timesteps[0], sample)
        assert result.prev_sample.dtype == torch.float16

    def test_foreign_timestep_raises(self):
        scheduler = make(SchedulerType.DDIM, steps=10)
        sample = torch.randn(1, 4, 8, 8)
        with pytest.raises(ScheduleContractError):
            scheduler.step(torch.zeros_like(sample), 12345, sample)

    def test_step_accepts_tensor_timestep(self):
        scheduler = make(SchedulerType.EULER, steps=10)
        sample = torch.randn(1, 4, 8, 8)
        result = scheduler.step(torch.zeros_like(sample), torch.tensor(scheduler.timesteps[0]), sample)
        assert result.prev_sample.shape == sample.shape

    def test_ddim_eta_zero_is_deterministic(self):
        a = make(SchedulerType.DDIM, steps=10, seed=1)
        b = make(SchedulerType.DDIM, steps=10, seed=2)
        sample = torch.ones(1, 4, 8, 8)
        eps = torch.full_like(sample, 0.5)
        t = a.timesteps[0]
        assert torch.equal(a.step(eps, t, sample).prev_sample, b.step(eps, t, sample).prev_sample)

    def test_ancestral_noise_follows_seed(self):
        sample = torch.ones(1, 4, 8, 8)
        eps = torch.full_like(sample, 0.5)
        a = make(SchedulerType.EULER_ANCESTRAL, seed=1)
        b = make(SchedulerType.EULER_ANCESTRAL, seed=1)
        c = make(SchedulerType.EULER_ANCESTRAL, seed=2)
        t = a.timesteps[0]
        ra, rb, rc = (s.step(eps, t, sample).prev_sample for s in (a, b, c))
        assert torch.equal(ra, rb)
        assert not torch.equal(ra, rc)

    def test_lcm_final_step_returns_denoised(self):
        scheduler = make(SchedulerType.LCM, steps=4)
        sample = torch.randn(1, 4, 8, 8)
        result = None
        for t in scheduler.timesteps:
            result = scheduler.step(torch.zeros_like(sample), t, sample)
            sample = result.prev_sample
        assert torch.equal(result.prev_sample, result.denoised)

    def test_lcm_boundary_scalings(self):
        from latentforge.blocks.schedulers.lcm import LCMScheduler

        c_skip, c_out = LCMScheduler.boundary_scalings(0)
        assert c_skip == pytest.approx(1.0)
        assert c_out == pytest.approx(0.0)
        c_skip, c_out = LCMScheduler.boundary_scalings(999)
        assert c_skip < 1e-6
        assert c_out == pytest.approx(1.0, abs=1e-6)


# ==================== Noising / scaling ====================

class TestNoiseAndScale:
    @pytest.mark.parametrize("scheduler_type", SIGMA_VARIANTS + [SchedulerType.FLOW_MATCH_EULER])
    def test_sigma_add_noise_with_zero_noise_is_identity(self, scheduler_type):
        scheduler = make(scheduler_type, steps=10)
        x = torch.randn(1, 4, 8, 8)
        out = scheduler.add_noise(x, torch.zeros_like(x), [scheduler.timesteps[3]])
        assert torch.equal(out, x)

    def test_euler_add_noise_uses_schedule_sigma(self):
        scheduler = make(SchedulerType.EULER, steps=10)
        x, noise = torch.randn(1, 4, 8, 8), torch.randn(1, 4, 8, 8)
        out = scheduler.add_noise(x, noise, [scheduler.timesteps[2]])
        assert torch.allclose(out, x + noise * float(scheduler.sigmas[2]))

    def test_alpha_add_noise(self):
        scheduler = make(SchedulerType.DDIM, steps=10)
        x, noise = torch.randn(1, 4, 8, 8), torch.randn(1, 4, 8, 8)
        t = scheduler.timesteps[4]
        a = float(scheduler.alphas_cumprod[t])
        out = scheduler.add_noise(x, noise, [t])
        assert torch.allclose(out, a ** 0.5 * x + (1 - a) ** 0.5 * noise, atol=1e-6)

    def test_euler_scale_input(self):
        scheduler = make(SchedulerType.EULER, steps=10)
        x = torch.ones(1, 4, 8, 8)
        sigma = float(scheduler.sigmas[0])
        out = scheduler.scale_input(x, scheduler.timesteps[0])
        assert torch.allclose(out, x / math.sqrt(sigma ** 2 + 1))

    def test_init_noise_sigma(self):
        euler = make(SchedulerType.EULER, steps=10)
        assert euler.init_noise_sigma == pytest.approx(float(euler.sigmas.max()))
        leading = make(SchedulerType.EULER, steps=10, timestep_spacing="leading")
        sigma_max = float(leading.sigmas.max())
        assert leading.init_noise_sigma == pytest.approx(math.sqrt(sigma_max ** 2 + 1))
        assert make(SchedulerType.DDIM).init_noise_sigma == 1.0
        assert make(SchedulerType.FLOW_MATCH_EULER).init_noise_sigma == 1.0

    def test_random_sample_is_seeded_and_unscaled(self):
        a = create_scheduler(SchedulerOptions(seed=99)).create_random_sample((1, 4, 32, 32))
        b = create_scheduler(SchedulerOptions(seed=99)).create_random_sample((1, 4, 32, 32))
        assert torch.equal(a, b)
        assert abs(float(a.std()) - 1.0) < 0.1
