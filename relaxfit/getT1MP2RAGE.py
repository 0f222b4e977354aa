### Fitting of T1 from MP2RAGE uniform (UNI) images via a look-up table
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
from dataclasses import dataclass
import numpy as np

from relaxfit.fiterrors import InvalidInputError


### T1 values of the look-up table (in s): from 50 ms to 5 s in steps of 50 ms
T1_GRID = np.linspace(0.05,5.0,100)


@dataclass(frozen=True)
class MP2RAGEProtocol:
	''' Sequence parameters of an MP2RAGE experiment

		FIELDS
		- tr_inv: repetition time between two inversion pulses (s)
		- tr_exc: repetition time of the gradient echo readouts (s)
		- ti: inversion times of the two readouts (s), measured from the inversion pulse to
			  the excitation of the k-space centre
		- fa: flip angles of the two readouts (deg)
		- nshots: number of excitations before and after the k-space centre in each readout
		- inveff: efficiency of the inversion pulse (1 for a perfect inversion) '''

	tr_inv: float = 6.0
	tr_exc: float = 6.7e-3
	ti: tuple = (0.8,2.7)
	fa: tuple = (4.0,5.0)
	nshots: tuple = (35,72)
	inveff: float = 0.96

	def __post_init__(self):
		object.__setattr__(self,'ti',tuple(float(val) for val in self.ti))
		object.__setattr__(self,'fa',tuple(float(val) for val in self.fa))
		object.__setattr__(self,'nshots',tuple(int(val) for val in self.nshots))

		if len(self.ti)!=2 or len(self.fa)!=2 or len(self.nshots)!=2:
			raise InvalidInputError('MP2RAGE requires 2 inversion times, 2 flip angles and 2 shot numbers (before/after the k-space centre)')
		if not self.tr_inv>0 or not self.tr_exc>0:
			raise InvalidInputError('repetition times must be positive')
		if not 0<self.ti[0]<self.ti[1]:
			raise InvalidInputError('inversion times must be positive and strictly increasing, while they are {}'.format(self.ti))
		if min(self.nshots)<0:
			raise InvalidInputError('the number of shots cannot be negative')
		if not 0<self.inveff<=1:
			raise InvalidInputError('the inversion efficiency must be in (0; 1], while it is set to {}'.format(self.inveff))

		# Both readout blocks must fit between consecutive inversions
		nbef = self.nshots[0]*self.tr_exc
		naft = self.nshots[1]*self.tr_exc
		if (self.ti[1]-self.ti[0]<nbef+naft) or (self.ti[0]<nbef) or (self.ti[1]>self.tr_inv-naft):
			raise InvalidInputError('the readout blocks do not fit between inversion pulses with the requested timing')


def MP2RAGEReadout(mz_value,cos_e1,e1_value,nexc):
	''' Longitudinal magnetisation after nexc spoiled excitations, given the magnetisation mz_value before them '''
	return mz_value*cos_e1**nexc + (1.0 - e1_value)*(1.0 - cos_e1**nexc)/(1.0 - cos_e1)


def MP2RAGEsignal(protocol,t1):
	''' Generate the signal of the two readouts of an MP2RAGE experiment


		INTERFACE
		sig1, sig2 = MP2RAGEsignal(protocol,t1)

		PARAMETERS
		- protocol: MP2RAGEProtocol object storing the sequence parameters
		- t1: scalar or array of longitudinal relaxation times (s, strictly positive)

		RETURNS
		- sig1, sig2: signals (same shape as t1) at the k-space centre of the first and second readout,
					  for a unit proton density. The magnetisation is in the steady state reached after
					  repeated inversions: it is inverted with efficiency protocol.inveff, recovers freely
					  between the readout blocks, and is sampled by protocol.nshots spoiled excitations
					  before/after the k-space centre of each readout.

		References: "MP2RAGE, a self bias-field corrected sequence for improved segmentation and
					T1-mapping at high field", Marques JP et al, NeuroImage (2010), 49:1271-1281 '''

	### Handle inputs
	t1_values = np.array(t1,'float64')
	fa_values = np.deg2rad(np.array(protocol.fa,'float64'))
	nbef = protocol.nshots[0]
	naft = protocol.nshots[1]
	ntot = nbef + naft

	### Delays of free recovery: inversion -> readout 1 -> readout 2 -> next inversion
	td_values = [protocol.ti[0] - nbef*protocol.tr_exc,
				 protocol.ti[1] - protocol.ti[0] - ntot*protocol.tr_exc,
				 protocol.tr_inv - protocol.ti[1] - naft*protocol.tr_exc]
	e_td = [np.exp(-td/t1_values) for td in td_values]
	e1_value = np.exp(-protocol.tr_exc/t1_values)
	cos_e1 = [np.cos(fa)*e1_value for fa in fa_values]

	### Steady state magnetisation just before the inversion pulse
	mz_ss = 1.0 - e_td[0]
	for kk in range(0, 2):
		mz_ss = MP2RAGEReadout(mz_ss,cos_e1[kk],e1_value,ntot)
		mz_ss = mz_ss*e_td[kk+1] + (1.0 - e_td[kk+1])
	mz_ss = mz_ss / (1.0 + protocol.inveff*(cos_e1[0]*cos_e1[1])**ntot*e_td[0]*e_td[1]*e_td[2])

	### Signal at the k-space centre of the first readout
	mz_value = -protocol.inveff*mz_ss*e_td[0] + (1.0 - e_td[0])
	mz_value = MP2RAGEReadout(mz_value,cos_e1[0],e1_value,nbef)
	sig1 = np.sin(fa_values[0])*mz_value

	### Signal at the k-space centre of the second readout
	mz_value = MP2RAGEReadout(mz_value,cos_e1[0],e1_value,naft)
	mz_value = mz_value*e_td[1] + (1.0 - e_td[1])
	mz_value = MP2RAGEReadout(mz_value,cos_e1[1],e1_value,nbef)
	sig2 = np.sin(fa_values[1])*mz_value

	return sig1, sig2


def MP2RAGEuni(sig1,sig2):
	''' Combine the two MP2RAGE readouts into the uniform image UNI = sig1*sig2 / (sig1^2 + sig2^2), in [-0.5; 0.5] '''
	sig1 = np.array(sig1,'float64')
	sig2 = np.array(sig2,'float64')
	with np.errstate(divide='ignore',invalid='ignore'):
		uni = sig1*sig2 / (sig1*sig1 + sig2*sig2)
	return uni


def MP2RAGELookupTable(protocol,t1_grid=None):
	''' Look-up table relating MP2RAGE UNI values to T1

		INTERFACE
		uni_table, t1_table = MP2RAGELookupTable(protocol)
		uni_table, t1_table = MP2RAGELookupTable(protocol,t1_grid)

		PARAMETERS
		- protocol: MP2RAGEProtocol object storing the sequence parameters
		- t1_grid: increasing T1 values (s) on which the table is calculated (default: T1_GRID)

		RETURNS
		- uni_table: UNI values, strictly decreasing. Only the monotonic part of the UNI-T1 relationship
					 is kept (from the maximum to the minimum UNI value); the first and last values are
					 set to 0.5 and -0.5, so that any UNI value can be looked up
		- t1_table: T1 values (s) corresponding to uni_table '''

	if t1_grid is None:
		t1_grid = T1_GRID
	t1_grid = np.array(t1_grid,'float64')

	uni_values = MP2RAGEuni(*MP2RAGEsignal(protocol,t1_grid))
	if not np.all(np.isfinite(uni_values)):
		raise InvalidInputError('the MP2RAGE signal vanishes for some T1 values with the requested protocol')

	### Keep the monotonic part only
	idx_max = np.argmax(uni_values)
	idx_min = np.argmin(uni_values)
	if idx_min<=idx_max:
		raise InvalidInputError('UNI values do not decrease with T1 for the requested protocol')
	uni_table = np.array(uni_values[idx_max:idx_min+1])
	t1_table = np.array(t1_grid[idx_max:idx_min+1])
	uni_table[0] = 0.5
	uni_table[-1] = -0.5

	return uni_table, t1_table


def T1FitMP2RAGE(uni,protocol=None):
	''' Estimate T1 and R1 from MP2RAGE UNI values

		INTERFACE
		t1_map, r1_map = T1FitMP2RAGE(uni)
		t1_map, r1_map = T1FitMP2RAGE(uni,protocol)

		PARAMETERS
		- uni: scalar or array (any shape) of UNI values, either in [-0.5; 0.5] or stored as
			   unsigned 12-bit integers (detected when any absolute value exceeds 1; converted as
			   UNI = value/4095 - 0.5)
		- protocol: MP2RAGEProtocol object (default: MP2RAGEProtocol())

		RETURNS
		- t1_map: T1 (s), interpolated linearly in the look-up table of MP2RAGELookupTable();
				  0.0 where the UNI value is not a number or falls outside the table
		- r1_map: R1 = 1/T1 (1/s); 0.0 where T1 is 0.0

		Maps are stored as double-precision floating point (FLOAT64). '''

	if protocol is None:
		protocol = MP2RAGEProtocol()

	### Bring integer-coded images to [-0.5; 0.5]
	uni_values = np.array(uni,'float64')
	if uni_values.size>0 and np.any(np.abs(uni_values[np.isfinite(uni_values)])>1):
		uni_values = uni_values/4095.0 - 0.5

	### Interpolate the look-up table (abscissae must increase, hence the flip)
	uni_table, t1_table = MP2RAGELookupTable(protocol)
	t1_map = np.interp(uni_values,np.flip(uni_table),np.flip(t1_table),left=np.nan,right=np.nan)
	t1_map = np.array(t1_map,'float64')
	t1_map[np.isnan(t1_map)] = 0.0

	### Relaxation rate
	r1_map = np.zeros(t1_map.shape,'float64')
	r1_map[t1_map>0] = 1.0/t1_map[t1_map>0]

	return t1_map, r1_map


def T1FitMP2RAGEText(uni_text,output_file,protocol):
	''' Estimate T1 and R1 from MP2RAGE UNI values stored in a text file

		INTERFACE
		fit_array = T1FitMP2RAGEText(uni_text,output_file,protocol)

		PARAMETERS
		- uni_text: path of a text file storing UNI values (one per row)
		- output_file: path of the output text file (None not to save the results), with columns T1 (s) and R1 (1/s)
		- protocol: MP2RAGEProtocol object

		RETURNS
		- fit_array: numpy array with one row per UNI value and columns T1, R1 '''

	### Load data
	print('    ... loading input data')
	try:
		uni_data = np.loadtxt(uni_text,ndmin=1)
		uni_data = np.array(uni_data,'float64').flatten()
	except (OSError, ValueError):
		print('')
		print('ERROR: the UNI file {} does not exist or is not a numeric text file. Exiting with 1.'.format(uni_text))
		print('')
		sys.exit(1)

	### Look-up table interpolation
	print('    ... T1 estimation')
	t1_vals, r1_vals = T1FitMP2RAGE(uni_data,protocol)
	fit_array = np.stack((t1_vals,r1_vals),axis=1)
	Nout = np.sum(t1_vals==0)
	if Nout>0:
		print('')
		print('WARNING: {} out of {} UNI values could not be converted to T1 (T1 and R1 set to 0.0)'.format(Nout,uni_data.size))
		print('')

	### Save the output
	if output_file is not None:
		print('    ... saving output file')
		np.savetxt(output_file,fit_array,header='T1 R1')

	return fit_array


# Run the module as a script when required
if __name__ == "__main__":

	### Print help and parse arguments
	parser = argparse.ArgumentParser(description='Estimation of T1 and R1 from MP2RAGE uniform images (UNI) via a look-up table of the MP2RAGE signal equation. Dependencies (Python packages): numpy (other than standard library). References: "MP2RAGE, a self bias-field corrected sequence for improved segmentation and T1-mapping at high field", Marques JP et al, NeuroImage (2010), 49:1271-1281.')
	parser.add_argument('uni_file', help='text file of UNI values (one per row), either in [-0.5; 0.5] or as 12-bit integers')
	parser.add_argument('--out', metavar='<file>', help='output text file with columns T1 (s) and R1 (1/s)')
	parser.add_argument('--trinv', metavar='<value>', default='6.0', help='repetition time between inversions, in s (default: 6.0)')
	parser.add_argument('--trexc', metavar='<value>', default='0.0067', help='repetition time of the readout excitations, in s (default: 0.0067)')
	parser.add_argument('--ti', metavar='<TI1,TI2>', default='0.8,2.7', help='inversion times, in s, separated by a comma (default: 0.8,2.7)')
	parser.add_argument('--fa', metavar='<FA1,FA2>', default='4,5', help='flip angles of the two readouts, in deg, separated by a comma (default: 4,5)')
	parser.add_argument('--nshots', metavar='<N1,N2>', default='35,72', help='excitations before and after the k-space centre, separated by a comma (default: 35,72)')
	parser.add_argument('--inveff', metavar='<value>', default='0.96', help='inversion efficiency (default: 0.96)')
	args = parser.parse_args()

	### Get input arguments
	unifile = args.uni_file
	outfile = args.out

	### Check sequence parameters
	try:
		mp2rage_prot = MP2RAGEProtocol(tr_inv=float(args.trinv), tr_exc=float(args.trexc), ti=[float(val) for val in args.ti.split(',')], fa=[float(val) for val in args.fa.split(',')], nshots=[int(float(val)) for val in args.nshots.split(',')], inveff=float(args.inveff))
	except (InvalidInputError, ValueError) as err:
		print('')
		print('ERROR: {}. Exiting with 1.'.format(err))
		print('')
		sys.exit(1)

	print('')
	print('********************************************************************')
	print('              T1 estimation from MP2RAGE UNI values                 ')
	print('********************************************************************')
	print('')
	print('** Called on UNI file: {}'.format(unifile))
	print('** Inversion times (s): {}; flip angles (deg): {}'.format(mp2rage_prot.ti,mp2rage_prot.fa))
	if(outfile is not None):
		print('** Output file: {}'.format(outfile))
	print('')

	### Call estimation routine
	fitvals = T1FitMP2RAGEText(unifile, outfile, mp2rage_prot)
	if(outfile is None):
		print('')
		print('** T1 R1')
		for row in fitvals:
			print('   {} {}'.format(row[0],row[1]))

	### Done
	print('Processing completed.')
	print('')
	sys.exit(0)
