"""
Unit tests for multi-echo spin echo T2 fitting.

Tests cover:
- Recovery of T2 and M0 from noiseless decays (linear and exponential fitting)
- Dropping of the first echo
- Clamping of T2 in linear fitting
- Checks on inputs and fitting options
- Command line interface on text files
"""

import runpy
import sys
from dataclasses import FrozenInstanceError
import numpy as np
import pytest

from relaxfit.fiterrors import InvalidInputError, NonConvergenceError
from relaxfit.getT2MESE import (DEFAULT_ECHO_TIMES, T2MESEConfig, T2MESEResult, T2MESEsignal,
								T2MESEFobj, T2MESEEchoes, T2MESEInit, T2MESEFit)


@pytest.fixture
def echo_times():
	"""32 echoes from 10 ms to 320 ms."""
	return np.arange(1, 33) * 10.0


@pytest.fixture
def decay(echo_times):
	"""Noiseless decay with T2 = 80 ms and M0 = 1000."""
	return 1000.0 * np.exp(-echo_times / 80.0)


@pytest.fixture
def linear_config():
	return T2MESEConfig(algo='linear')


@pytest.fixture
def exp_config():
	return T2MESEConfig(algo='exponential')


class TestSignalModel:
	"""Tests for the signal equation and objective function."""

	def test_default_protocol(self, echo_times):
		np.testing.assert_allclose(DEFAULT_ECHO_TIMES, echo_times)

	def test_signal_values(self, echo_times):
		sig = T2MESEsignal(echo_times, [500.0, 40.0])
		np.testing.assert_allclose(sig, 500.0 * np.exp(-echo_times / 40.0))

	def test_signal_with_offset(self, echo_times):
		sig = T2MESEsignal(echo_times, [500.0, 40.0, 25.0])
		np.testing.assert_allclose(sig, 500.0 * np.exp(-echo_times / 40.0) + 25.0)

	def test_zero_t2_gives_offset_only(self, echo_times):
		sig = T2MESEsignal(echo_times, [500.0, 0.0, 3.0])
		np.testing.assert_array_equal(sig, np.full(echo_times.shape, 3.0))

	def test_signal_accepts_fit_result(self, echo_times):
		res = T2MESEResult(t2=60.0, m0=200.0)
		np.testing.assert_allclose(T2MESEsignal(echo_times, res), 200.0 * np.exp(-echo_times / 60.0))

	def test_objective_is_zero_at_truth(self, echo_times, decay):
		assert T2MESEFobj([1000.0, 80.0], echo_times, decay) == pytest.approx(0.0, abs=1e-18)
		assert T2MESEFobj([1000.0, 70.0], echo_times, decay) > 0.0


class TestFitResult:
	"""Tests for the fit output record."""

	def test_asdict_without_offset(self):
		assert T2MESEResult(t2=80.0, m0=1000.0).asdict() == {'t2': 80.0, 'm0': 1000.0}

	def test_asdict_with_offset(self):
		out = T2MESEResult(t2=80.0, m0=1000.0, offset=5.0).asdict()
		assert out == {'t2': 80.0, 'm0': 1000.0, 'offset': 5.0}

	def test_result_is_immutable(self):
		res = T2MESEResult(t2=80.0, m0=1000.0)
		with pytest.raises(FrozenInstanceError):
			res.t2 = 10.0


class TestConfig:
	"""Tests for the checks on fitting options."""

	def test_defaults(self):
		config = T2MESEConfig()
		assert config.algo == 'linear'
		assert config.dropfirst is False
		assert config.offset is False
		assert config.cutoff > 80.0

	@pytest.mark.parametrize('options', [
		{'algo': 'quadratic'},
		{'algo': 'linear', 'offset': True},
		{'cutoff': 0.0},
		{'cutoff': -5.0},
		{'cutoff': float('nan')},
		{'maxiter': 0},
		{'maxiter': 2.5},
		{'tol': 0.0},
	])
	def test_invalid_options(self, options):
		with pytest.raises(InvalidInputError):
			T2MESEConfig(**options)

	def test_offset_allowed_with_exponential(self):
		assert T2MESEConfig(algo='exponential', offset=True).offset is True


class TestInputChecks:
	"""Tests for the checks on echo times and measurements."""

	def test_mismatched_lengths(self, echo_times):
		with pytest.raises(InvalidInputError):
			T2MESEFit(echo_times, np.ones(5))

	def test_single_echo(self):
		with pytest.raises(InvalidInputError):
			T2MESEFit([10.0], [100.0])

	def test_non_increasing_echo_times(self):
		with pytest.raises(InvalidInputError):
			T2MESEFit([10.0, 30.0, 20.0], [100.0, 50.0, 25.0])

	def test_repeated_echo_times(self):
		with pytest.raises(InvalidInputError):
			T2MESEFit([10.0, 10.0, 20.0], [100.0, 50.0, 25.0])

	@pytest.mark.parametrize('algo', ['linear', 'exponential'])
	def test_drop_first_echo_on_two_echoes(self, algo):
		config = T2MESEConfig(algo=algo, dropfirst=True)
		with pytest.raises(InvalidInputError):
			T2MESEFit([10.0, 20.0], [100.0, 50.0], config)

	def test_echo_selection(self, echo_times, decay):
		te_values, sig_values = T2MESEEchoes(echo_times, decay, True)
		np.testing.assert_array_equal(te_values, echo_times[1:])
		np.testing.assert_array_equal(sig_values, decay[1:])

	def test_linear_rejects_zero_signal(self, echo_times, decay, linear_config):
		decay[-1] = 0.0
		with pytest.raises(InvalidInputError):
			T2MESEFit(echo_times, decay, linear_config)

	def test_exponential_rejects_all_zero_signal(self, echo_times, exp_config):
		with pytest.raises(InvalidInputError):
			T2MESEFit(echo_times, np.zeros(echo_times.shape), exp_config)

	def test_exponential_offset_needs_three_echoes(self):
		config = T2MESEConfig(algo='exponential', offset=True)
		with pytest.raises(InvalidInputError):
			T2MESEFit([10.0, 20.0], [100.0, 50.0], config)


class TestLinearFit:
	"""Tests for log-linear T2 fitting."""

	def test_default_algorithm_is_linear(self, echo_times, decay):
		res = T2MESEFit(echo_times, decay)
		assert res.offset is None
		assert res.t2 == pytest.approx(80.0, rel=1e-6)
		assert res.m0 == pytest.approx(1000.0, rel=1e-6)

	@pytest.mark.parametrize('t2_true,m0_true', [(20.0, 50.0), (80.0, 1000.0), (150.0, 3.5)])
	def test_recovers_parameters(self, echo_times, linear_config, t2_true, m0_true):
		sig = m0_true * np.exp(-echo_times / t2_true)
		res = T2MESEFit(echo_times, sig, linear_config)
		assert res.t2 == pytest.approx(t2_true, rel=1e-3)
		assert res.m0 == pytest.approx(m0_true, rel=1e-3)

	def test_drop_first_echo_ignores_corrupted_echo(self, echo_times, decay):
		decay[0] = 0.5 * decay[0]
		res = T2MESEFit(echo_times, decay, T2MESEConfig(dropfirst=True))
		assert res.t2 == pytest.approx(80.0, rel=1e-6)
		assert res.m0 == pytest.approx(1000.0, rel=1e-6)

	def test_flat_decay_clamped_to_cutoff(self, echo_times):
		config = T2MESEConfig(cutoff=250.0)
		res = T2MESEFit(echo_times, np.full(echo_times.shape, 321.0), config)
		assert res.t2 == 250.0
		assert res.m0 == pytest.approx(321.0)

	def test_slow_decay_clamped_to_cutoff(self, echo_times):
		sig = 100.0 * np.exp(-echo_times / 5000.0)
		res = T2MESEFit(echo_times, sig, T2MESEConfig(cutoff=40.0))
		assert res.t2 == 40.0

	def test_rising_signal_clamped_to_zero(self, echo_times):
		sig = 100.0 * np.exp(echo_times / 80.0)
		res = T2MESEFit(echo_times, sig, T2MESEConfig())
		assert res.t2 == 0.0
		assert res.m0 == pytest.approx(100.0, rel=1e-6)

	def test_signal_round_trip(self, echo_times, decay, linear_config):
		res = T2MESEFit(echo_times, decay, linear_config)
		np.testing.assert_allclose(T2MESEsignal(echo_times, res), decay, rtol=1e-6)


class TestExponentialFit:
	"""Tests for non-linear (Levenberg-Marquardt) T2 fitting."""

	def test_initialisation_from_two_echoes(self):
		te = np.array([10.0, 20.0, 30.0])
		sig = 400.0 * np.exp(-te / 45.0)
		param_init = T2MESEInit(te, sig)
		assert param_init[0] == pytest.approx(1.5)
		assert param_init[1] == pytest.approx(45.0)

	@pytest.mark.parametrize('sig', [[100.0, 100.0, 100.0], [10.0, 20.0, 40.0]])
	def test_initialisation_fallback(self, sig):
		param_init = T2MESEInit([10.0, 20.0, 30.0], sig)
		assert param_init[1] == 30.0

	@pytest.mark.parametrize('t2_true,m0_true', [(20.0, 50.0), (80.0, 1000.0), (150.0, 3.5)])
	def test_recovers_parameters(self, echo_times, exp_config, t2_true, m0_true):
		sig = m0_true * np.exp(-echo_times / t2_true)
		res = T2MESEFit(echo_times, sig, exp_config)
		assert res.offset is None
		assert res.t2 == pytest.approx(t2_true, rel=1e-3)
		assert res.m0 == pytest.approx(m0_true, rel=1e-3)

	def test_recovers_offset(self, echo_times):
		sig = 1000.0 * np.exp(-echo_times / 80.0) + 50.0
		config = T2MESEConfig(algo='exponential', offset=True)
		res = T2MESEFit(echo_times, sig, config)
		assert res.t2 == pytest.approx(80.0, rel=1e-3)
		assert res.m0 == pytest.approx(1000.0, rel=1e-3)
		assert res.offset == pytest.approx(50.0, rel=1e-2)

	def test_drop_first_echo(self, echo_times, decay):
		decay[0] = 2.0 * decay[0]
		config = T2MESEConfig(algo='exponential', dropfirst=True)
		res = T2MESEFit(echo_times, decay, config)
		assert res.t2 == pytest.approx(80.0, rel=1e-3)
		assert res.m0 == pytest.approx(1000.0, rel=1e-3)

	def test_signal_round_trip(self, echo_times, decay, exp_config):
		res = T2MESEFit(echo_times, decay, exp_config)
		np.testing.assert_allclose(T2MESEsignal(echo_times, res), decay, rtol=1e-4)

	def test_no_cutoff_in_exponential_fit(self, echo_times):
		sig = 100.0 * np.exp(-echo_times / 300.0)
		config = T2MESEConfig(algo='exponential', cutoff=40.0)
		res = T2MESEFit(echo_times, sig, config)
		assert res.t2 == pytest.approx(300.0, rel=1e-3)

	def test_iteration_cap_raises(self, echo_times):
		sig = 1000.0 * np.exp(-echo_times / 80.0) + 200.0
		config = T2MESEConfig(algo='exponential', maxiter=1)
		with pytest.raises(NonConvergenceError):
			T2MESEFit(echo_times, sig, config)


class TestCommandLine:
	"""Tests for the command line interface on text files."""

	def run_script(self, monkeypatch, argv):
		monkeypatch.setattr(sys, 'argv', ['getT2MESE.py'] + argv)
		with pytest.raises(SystemExit) as excinfo:
			runpy.run_module('relaxfit.getT2MESE', run_name='__main__')
		return excinfo.value.code

	def test_fit_rows(self, tmp_path, monkeypatch, echo_times):
		sig = np.stack((1000.0 * np.exp(-echo_times / 80.0), 300.0 * np.exp(-echo_times / 40.0)))
		sig_file = tmp_path / 'sig.txt'
		te_file = tmp_path / 'te.txt'
		out_file = tmp_path / 'fit.txt'
		np.savetxt(sig_file, sig)
		np.savetxt(te_file, echo_times[np.newaxis, :])

		code = self.run_script(monkeypatch, [str(sig_file), str(te_file), '--out', str(out_file)])
		assert code == 0

		fit = np.loadtxt(out_file, ndmin=2)
		assert fit.shape == (2, 3)
		np.testing.assert_allclose(fit[:, 0], [80.0, 40.0], rtol=1e-6)
		np.testing.assert_allclose(fit[:, 1], [1000.0, 300.0], rtol=1e-6)
		np.testing.assert_array_equal(fit[:, 2], [1, 1])

	def test_failed_rows_are_flagged(self, tmp_path, monkeypatch):
		sig_file = tmp_path / 'sig.txt'
		te_file = tmp_path / 'te.txt'
		out_file = tmp_path / 'fit.txt'
		np.savetxt(sig_file, np.array([[0.0, 0.0, 0.0], [100.0, 50.0, 25.0]]))
		np.savetxt(te_file, np.array([[10.0, 20.0, 30.0]]))

		code = self.run_script(monkeypatch, [str(sig_file), str(te_file), '--algo', 'exponential', '--out', str(out_file)])
		assert code == 0

		fit = np.loadtxt(out_file, ndmin=2)
		np.testing.assert_array_equal(fit[0], [0.0, 0.0, -1.0])
		assert fit[1, 2] == 1

	def test_invalid_options_exit_with_error(self, tmp_path, monkeypatch):
		sig_file = tmp_path / 'sig.txt'
		te_file = tmp_path / 'te.txt'
		np.savetxt(sig_file, np.array([[100.0, 50.0, 25.0]]))
		np.savetxt(te_file, np.array([[10.0, 20.0, 30.0]]))

		code = self.run_script(monkeypatch, [str(sig_file), str(te_file), '--offset'])
		assert code == 1

	def test_mismatched_files_exit_with_error(self, tmp_path, monkeypatch):
		sig_file = tmp_path / 'sig.txt'
		te_file = tmp_path / 'te.txt'
		np.savetxt(sig_file, np.array([[100.0, 50.0, 25.0]]))
		np.savetxt(te_file, np.array([[10.0, 20.0]]))

		code = self.run_script(monkeypatch, [str(sig_file), str(te_file)])
		assert code == 1
