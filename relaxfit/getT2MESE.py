### Voxel-wise fitting of T2 from multi-echo spin echo magnitude data
#
# Author: Francesco Grussu, University College London
#		    CDSQuaMRI Project 
#		   <f.grussu@ucl.ac.uk> <francegrussu@gmail.com>
#
# Code released under BSD Two-Clause license
#
# Copyright (c) 2019 University College London. 
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without modification, are permitted provided that the following conditions are met:
# 
# 1. Redistributions of source code must retain the above copyright notice, this list of conditions and the following disclaimer.
# 2. Redistributions in binary form must reproduce the above copyright notice, this list of conditions and the following disclaimer in the documentation and/or other materials provided with the distribution.
# 
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.
# 
# The views and conclusions contained in the software and documentation are those
# of the authors and should not be interpreted as representing official policies,
# either expressed or implied, of the FreeBSD Project.

### Load useful modules
import argparse, sys
import dataclasses
from dataclasses import dataclass
import numpy as np
from scipy.optimize import least_squares

from relaxfit.fiterrors import InvalidInputError, NonConvergenceError


### Default protocol: 32 echoes, from 10 ms to 320 ms in steps of 10 ms
DEFAULT_ECHO_TIMES = np.linspace(10.0,320.0,32)

### Fitting algorithms
FIT_ALGOS = ('linear','exponential')


@dataclass(frozen=True)
class T2MESEConfig:
	''' Options for the fitting of T2 decay on multi-echo spin echo data

		FIELDS
		- algo: fitting algorithm, "linear" (regression of the log-signal, default) or "exponential"
				(non-linear least squares with the Levenberg-Marquardt algorithm)
		- dropfirst: if True, the first echo is discarded (it is often contaminated by stimulated echoes)
		- offset: if True, a constant offset is fitted on top of the exponential decay
				  (only available with algo "exponential")
		- cutoff: upper limit for T2 estimated with algo "linear", in the same units as the echo times
		- maxiter: maximum number of objective function evaluations for algo "exponential"
		- tol: tolerance on the relative change of the objective function and of the
			   parameters for algo "exponential"

		Options are checked once, when the object is created, and cannot be modified afterwards. '''

	algo: str = 'linear'
	dropfirst: bool = False
	offset: bool = False
	cutoff: float = 2000.0
	maxiter: int = 2000
	tol: float = 1e-8

	def __post_init__(self):
		if self.algo not in FIT_ALGOS:
			raise InvalidInputError('unrecognised fitting algorithm "{}" (choose among "linear" and "exponential")'.format(self.algo))
		if self.offset and self.algo=='linear':
			raise InvalidInputError('the offset term cannot be fitted with the "linear" algorithm (use "exponential" instead)')
		if not self.cutoff>0:
			raise InvalidInputError('the T2 cutoff must be a positive number, while it is set to {}'.format(self.cutoff))
		if isinstance(self.maxiter, bool) or int(self.maxiter)!=self.maxiter or self.maxiter<1:
			raise InvalidInputError('the maximum number of iterations must be a positive integer, while it is set to {}'.format(self.maxiter))
		if not self.tol>=np.finfo(np.float64).eps:
			raise InvalidInputError('the fitting tolerance must be at least {}, while it is set to {}'.format(np.finfo(np.float64).eps,self.tol))


@dataclass(frozen=True)
class T2MESEResult:
	''' Output of T2 fitting

		FIELDS
		- t2: transverse relaxation time, in the same units as the echo times
		- m0: signal at zero echo time (proton density, including receiver coil field bias)
		- offset: constant signal offset, or None if the offset term was not fitted '''

	t2: float
	m0: float
	offset: float = None

	def asdict(self):
		out = dataclasses.asdict(self)
		if self.offset is None:
			del out['offset']
		return out

	def params(self):
		''' Tissue parameters in the order used by T2MESEsignal() '''
		if self.offset is None:
			return np.array([self.m0,self.t2])
		return np.array([self.m0,self.t2,self.offset])


def T2MESEsignal(mri_te,tissue_par):
	''' Generate the signal for a multi-echo spin echo experiment


		INTERFACE
		signal = T2MESEsignal(mri_te,tissue_par)

		PARAMETERS
		- mri_te: list/array indicating the TEs (echo times) used for the experiment (one measurement per TE)
		- tissue_par: list/array of tissue parameters, in the following order:
						  tissue_par[0] = M0 (signal at zero echo time)
						  tissue_par[1] = T2 (transverse relaxation time, same units as the TEs)
						  tissue_par[2] = offset (optional, constant signal offset; 0 if not given)
					  A T2MESEResult object is also accepted

		RETURNS
		- signal: a numpy array of measurements generated according to a mono-exponential decay,

				 signal  =  M0 * exp(-TE/T2) + offset

			  where TE is the echo time. A T2 equal to 0 produces a signal equal to the offset.

		References: "Quantitative MRI of the brain", 2nd edition, Tofts, Cercignani and Dowell editors, Taylor and Francis Group '''


	### Handle inputs
	if isinstance(tissue_par, T2MESEResult):
		tissue_par = tissue_par.params()
	te_values = np.array(mri_te,'float64')  # Make sure echo times are stored as a numpy array
	m0_value = tissue_par[0]        # M0
	t2_value = tissue_par[1]        # T2
	if len(tissue_par)>2:
		off_value = tissue_par[2]   # Offset
	else:
		off_value = 0.0

	### Calculate signal
	with np.errstate(divide='raise',invalid='raise'):
		try:
			signal = m0_value * np.exp(-te_values/t2_value) + off_value
		except FloatingPointError:
			signal = 0.0 * np.exp(-te_values) + off_value   # Only the offset is left when T2 is 0

	### Output signal
	return signal


def T2MESEFobj(tissue_par,mri_te,meas):
	''' Fitting objective function for mono-exponential T2 decay

		INTERFACE
		fobj = T2MESEFobj(tissue_par,mri_te,meas)

		PARAMETERS
		- tissue_par: list/array of tissue parameters (see T2MESEsignal())
		- mri_te: list/array indicating the TEs (echo times) used for the experiment (one measurement per TE)
		- meas: list/array of measurements

		RETURNS
		- fobj: sum of squared errors between measurements and predictions, i.e.

				 fobj = SUM_OVER_n( (prediction - measurement)^2 ) '''

	### Predict signals given tissue and sequence parameters
	pred = T2MESEsignal(mri_te,tissue_par)

	### Calculate objective function and return
	fobj = np.sum( (np.array(pred) - np.array(meas))**2 )
	return fobj


def T2MESEEchoes(mri_te,meas,dropfirst):
	''' Check echo times and measurements and select the echoes used for fitting

		INTERFACE
		te_values, sig_values = T2MESEEchoes(mri_te,meas,dropfirst)

		PARAMETERS
		- mri_te: list/array of echo times, strictly increasing
		- meas: list/array of measurements, one per echo time
		- dropfirst: if True, the first echo is discarded

		RETURNS
		- te_values: echo times used for fitting (FLOAT64 numpy array)
		- sig_values: measurements used for fitting (FLOAT64 numpy array)

		An InvalidInputError is raised when the inputs are inconsistent or when
		fewer than 2 echoes are left for fitting. '''

	### Handle inputs
	te_values = np.array(mri_te,'float64')
	sig_values = np.array(meas,'float64')

	### Check consistency of echo times and measurements
	if te_values.ndim!=1 or sig_values.ndim!=1:
		raise InvalidInputError('echo times and measurements must be one-dimensional, while they have shapes {} and {}'.format(te_values.shape,sig_values.shape))
	if te_values.size!=sig_values.size:
		raise InvalidInputError('the number of measurements ({}) does not match the number of echo times ({})'.format(sig_values.size,te_values.size))
	if te_values.size<2:
		raise InvalidInputError('at least 2 echoes are required for T2 fitting, while {} were provided'.format(te_values.size))
	if not np.all(np.isfinite(te_values)):
		raise InvalidInputError('echo times must be finite numbers')
	if np.any(np.diff(te_values)<=0):
		raise InvalidInputError('echo times must be strictly increasing')
	if not np.all(np.isfinite(sig_values)):
		raise InvalidInputError('measurements must be finite numbers')

	### Drop the first echo if required
	if dropfirst:
		te_values = te_values[1:]
		sig_values = sig_values[1:]
		if sig_values.size<2:
			raise InvalidInputError('dropping the first echo is not valid for an echo train length of 2')

	return te_values, sig_values


def T2MESEInit(mri_te,meas):
	''' Analytical initialisation of non-linear T2 fitting

		INTERFACE
		param_init = T2MESEInit(mri_te,meas)

		PARAMETERS
		- mri_te: list/array of echo times (at least 2)
		- meas: list/array of measurements, one per echo time

		RETURNS
		- param_init: numpy array storing initial values for the non-linear fitting of the
					  normalised measurements (measurements divided by their maximum absolute value):
						 param_init[0] = M0, as 1.5 times the maximum normalised measurement
						 param_init[1] = T2, from the decay between the first and the second-to-last
										 echoes, or 30 when this value is not positive or not a number '''

	### Normalise measurements
	te_values = np.array(mri_te,'float64')
	sig_values = np.abs(np.array(meas,'float64'))
	sig_max = np.max(sig_values)
	if sig_max==0:
		raise InvalidInputError('all measurements are 0: the signal cannot be normalised')
	sig_values = sig_values/sig_max

	### T2 from two points of the decay
	with np.errstate(divide='ignore',invalid='ignore'):
		t2_init = (te_values[0] - te_values[-2]) / np.log(sig_values[-2]/sig_values[0])
	if t2_init<=0 or not np.isfinite(t2_init):
		t2_init = 30.0

	### M0 from the maximum signal
	m0_init = 1.5*np.max(sig_values)

	return np.array([m0_init,t2_init])


def T2MESELinear(mri_te,meas,config):
	''' Fit T2 by linear regression of the log-signal against the echo time

		INTERFACE
		fit_out = T2MESELinear(mri_te,meas,config)

		PARAMETERS
		- mri_te: list/array of echo times (strictly increasing)
		- meas: list/array of strictly positive measurements, one per echo time
		- config: T2MESEConfig object with algo "linear"

		RETURNS
		- fit_out: T2MESEResult object. T2 = -1/slope of the regression line, and M0 = exp(intercept).
				   A slope equal to 0 (flat decay) is replaced by the smallest negative slope
				   -eps before division. T2 is then limited to [0; config.cutoff] (NaN is set to 0). '''

	### Select echoes
	te_values, sig_values = T2MESEEchoes(mri_te,meas,config.dropfirst)
	if np.any(sig_values<=0):
		raise InvalidInputError('log-linear fitting requires strictly positive measurements')
	Nmeas = te_values.size

	### Linear regression of log-signal, referenced to the first echo so that a flat decay has exactly zero slope
	logsig = np.log(sig_values)
	allones = np.ones([Nmeas,1])                                   # Column of ones
	Qmat = np.concatenate((allones,np.reshape(te_values,(Nmeas,1))),axis=1)    # Design matrix Q
	coeffs = np.matmul( np.linalg.pinv(Qmat) , logsig - logsig[0] )
	acoeff = coeffs[0] + logsig[0]
	bcoeff = coeffs[1]

	### Retrieve signal model parameters from the regression coefficients
	m0_fit = np.exp(acoeff)
	if bcoeff==0:
		bcoeff = -np.finfo(np.float64).eps
	t2_fit = -1.0/bcoeff

	### Keep T2 within [0; cutoff]
	if t2_fit>config.cutoff:
		t2_fit = config.cutoff
	if np.isnan(t2_fit):
		t2_fit = 0.0
	if t2_fit<0:
		t2_fit = 0.0

	return T2MESEResult(t2=float(t2_fit),m0=float(m0_fit))


def T2MESENonlinear(mri_te,meas,config):
	''' Fit T2 by non-linear least squares (Levenberg-Marquardt)

		INTERFACE
		fit_out = T2MESENonlinear(mri_te,meas,config)

		PARAMETERS
		- mri_te: list/array of echo times (strictly increasing)
		- meas: list/array of measurements, one per echo time
		- config: T2MESEConfig object with algo "exponential"

		RETURNS
		- fit_out: T2MESEResult object. Fitting is performed on measurements normalised by their maximum
				   absolute value and initialised with T2MESEInit(); M0 and offset are then scaled back to
				   the units of the measurements. T2 is not limited to [0; config.cutoff].

		A NonConvergenceError is raised when the optimiser stops without meeting
		config.tol within config.maxiter evaluations of the objective function. '''

	### Select echoes
	te_values, sig_values = T2MESEEchoes(mri_te,meas,config.dropfirst)
	if config.offset:
		nparams = 3
	else:
		nparams = 2
	if sig_values.size<nparams:
		raise InvalidInputError('{} measurements are not enough to fit {} parameters'.format(sig_values.size,nparams))

	### Normalise measurements and initialise the parameters
	sig_scale = np.max(np.abs(sig_values))
	if sig_scale==0:
		raise InvalidInputError('all measurements are 0: the signal cannot be normalised')
	sig_norm = sig_values/sig_scale
	param_init = T2MESEInit(te_values,sig_norm)
	if config.offset:
		param_init = np.append(param_init,0.0)

	### Residuals between predictions and normalised measurements
	def T2MESEResiduals(tissue_par):
		return T2MESEsignal(te_values,tissue_par) - sig_norm

	### Minimise the sum of squared residuals
	with np.errstate(over='ignore'):
		modelfit = least_squares(T2MESEResiduals, param_init, method='lm', ftol=config.tol, xtol=config.tol, max_nfev=config.maxiter)
	param_fit = modelfit.x
	if not modelfit.success:
		raise NonConvergenceError('non-linear T2 fitting did not converge after {} evaluations ({})'.format(modelfit.nfev,modelfit.message))
	if not np.all(np.isfinite(param_fit)):
		raise NonConvergenceError('non-linear T2 fitting returned non-finite parameters {}'.format(param_fit))

	### Scale amplitudes back to the units of the measurements
	m0_fit = param_fit[0]*sig_scale
	t2_fit = param_fit[1]
	if config.offset:
		off_fit = float(param_fit[2]*sig_scale)
	else:
		off_fit = None

	return T2MESEResult(t2=float(t2_fit),m0=float(m0_fit),offset=off_fit)


def T2MESEFit(mri_te,meas,config=None):
	''' Fit T2 on one multi-echo spin echo signal decay

		INTERFACE
		fit_out = T2MESEFit(mri_te,meas)
		fit_out = T2MESEFit(mri_te,meas,config)

		PARAMETERS
		- mri_te: list/array of echo times (strictly increasing; the units of T2 will be the same)
		- meas: list/array of magnitude measurements, one per echo time
		- config: T2MESEConfig object (default: T2MESEConfig(), i.e. "linear" fitting)

		RETURNS
		- fit_out: T2MESEResult object storing T2, M0 and, if required, the offset

		Errors: InvalidInputError for inconsistent inputs; NonConvergenceError
		when "exponential" fitting does not converge '''

	if config is None:
		config = T2MESEConfig()

	if config.algo=='linear':
		return T2MESELinear(mri_te,meas,config)
	else:
		return T2MESENonlinear(mri_te,meas,config)


def T2MESEFitText(sig_text,te_text,output_file,config):
	''' Fit T2 on signal decays stored in a text file

		INTERFACE
		fit_array = T2MESEFitText(sig_text,te_text,output_file,config)

		PARAMETERS
		- sig_text: path of a text file storing magnitude measurements, one signal decay per row
					(one column per echo time)
		- te_text: path of a text file storing the echo times (separated by spaces)
		- output_file: path of the output text file (None not to save the results). Columns are
					   T2, M0, [offset,] exit code (1: successful fitting; -1: fitting failed,
					   with T2, M0 and offset set to 0.0)
		- config: T2MESEConfig object

		RETURNS
		- fit_array: numpy array storing one row per signal decay, with the same columns as the output file '''

	### Load data
	print('    ... loading input data')
	try:
		sig_data = np.loadtxt(sig_text,ndmin=2)
		sig_data = np.array(sig_data,'float64')
	except (OSError, ValueError):
		print('')
		print('ERROR: the signal file {} does not exist or is not a numeric text file. Exiting with 1.'.format(sig_text))
		print('')
		sys.exit(1)
	try:
		te_array = np.loadtxt(te_text,ndmin=1)
		te_array = np.array(te_array,'float64')
	except (OSError, ValueError):
		print('')
		print('ERROR: the echo time file {} does not exist or is not a numeric text file. Exiting with 1.'.format(te_text))
		print('')
		sys.exit(1)

	### Check consistency of echo times and number of measurements
	if sig_data.shape[1]!=te_array.size:
		print('')
		print('ERROR: the number of measurements in {} does not match the number of echo times in {}. Exiting with 1.'.format(sig_text,te_text))
		print('')
		sys.exit(1)
	try:
		T2MESEEchoes(te_array,np.ones(te_array.shape),config.dropfirst)
	except InvalidInputError as err:
		print('')
		print('ERROR: the echo times in {} cannot be used for fitting ({}). Exiting with 1.'.format(te_text,err))
		print('')
		sys.exit(1)

	### Allocate output
	if config.offset:
		Nout = 4
	else:
		Nout = 3
	fit_array = np.zeros((sig_data.shape[0],Nout),'float64')

	### Fit each signal decay
	print('    ... T2 fitting ({} algorithm)'.format(config.algo))
	Nfail = 0
	for vv in range(0, sig_data.shape[0]):
		try:
			fit_out = T2MESEFit(te_array,sig_data[vv,:],config)
			fit_array[vv,0] = fit_out.t2
			fit_array[vv,1] = fit_out.m0
			if config.offset:
				fit_array[vv,2] = fit_out.offset
			fit_array[vv,Nout-1] = 1
		except (InvalidInputError, NonConvergenceError):
			fit_array[vv,Nout-1] = -1
			Nfail = Nfail + 1
	if Nfail>0:
		print('')
		print('WARNING: fitting failed for {} out of {} signal decays (their results are set to 0.0)'.format(Nfail,sig_data.shape[0]))
		print('')

	### Save the output
	if output_file is not None:
		print('    ... saving output file')
		if config.offset:
			col_names = 'T2 M0 Offset Exit'
		else:
			col_names = 'T2 M0 Exit'
		np.savetxt(output_file,fit_array,header=col_names)

	return fit_array


# Run the module as a script when required
if __name__ == "__main__":

	### Print help and parse arguments
	parser = argparse.ArgumentParser(description='Fitting of T2 from multi-echo spin echo magnitude data stored in text files (one signal decay per row), via linear regression of the log-signal or non-linear least squares (Levenberg-Marquardt). Dependencies (Python packages): numpy, scipy (other than standard library). References: "Quantitative MRI of the brain", 2nd edition, Tofts, Cercignani and Dowell editors, Taylor and Francis Group.')
	parser.add_argument('sig_file', help='text file of magnitude measurements, one signal decay per row and one column per echo time')
	parser.add_argument('te_file', help='text file of echo times (TEs) used to acquire the measurements (TEs separated by spaces; T2 will have the same units)')
	parser.add_argument('--out', metavar='<file>', help='output text file storing one row per signal decay, with columns T2, M0, Offset (only with --offset) and exit code (1 success; -1 fitting failed)')
	parser.add_argument('--algo', metavar='<type>', default='linear', help='fitting algorithm; choose among "linear" and "exponential" (default: "linear")')
	parser.add_argument('--dropfirst', action='store_true', help='discard the first echo before fitting')
	parser.add_argument('--offset', action='store_true', help='fit a constant offset term (only with "exponential" fitting)')
	parser.add_argument('--cutoff', metavar='<value>', default='2000.0', help='maximum T2 for "linear" fitting, same units as the TEs (default: 2000.0)')
	parser.add_argument('--maxiter', metavar='<N>', default='2000', help='maximum number of objective function evaluations for "exponential" fitting (default: 2000)')
	parser.add_argument('--tol', metavar='<value>', default='1e-8', help='tolerance for "exponential" fitting (default: 1e-8)')
	args = parser.parse_args()

	### Get input arguments
	sigfile = args.sig_file
	tefile = args.te_file
	outfile = args.out

	### Check fitting options
	try:
		fitconfig = T2MESEConfig(algo=args.algo, dropfirst=args.dropfirst, offset=args.offset, cutoff=float(args.cutoff), maxiter=int(float(args.maxiter)), tol=float(args.tol))
	except (InvalidInputError, ValueError) as err:
		print('')
		print('ERROR: {}. Exiting with 1.'.format(err))
		print('')
		sys.exit(1)

	print('')
	print('********************************************************************')
	print('          Fitting of multi-echo spin echo T2 decay                  ')
	print('********************************************************************')
	print('')
	print('** Called on signal file: {}'.format(sigfile))
	print('** Echo time file: {}'.format(tefile))
	print('** Fitting algorithm: {}'.format(fitconfig.algo))
	print('** Drop first echo: {}; offset term: {}'.format(fitconfig.dropfirst,fitconfig.offset))
	if(outfile is not None):
		print('** Output file: {}'.format(outfile))
	print('')

	### Call fitting routine
	fitvals = T2MESEFitText(sigfile, tefile, outfile, fitconfig)
	if(outfile is None):
		print('')
		print('** T2 M0{} Exit'.format(' Offset' if fitconfig.offset else ''))
		for row in fitvals:
			print('   ' + ' '.join('{}'.format(val) for val in row))

	### Done
	print('Processing completed.')
	print('')
	sys.exit(0)
