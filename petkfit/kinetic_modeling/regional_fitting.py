"""
This module provides :class:`LiverRegionalAnalysis`, which fits the dual-input liver model to a table of regional
time activity curves (TACs).

The regional TACs are read from a TSV file whose first column holds the frame mid-times. When the frame boundaries
are not given, they are estimated from the mid-times with
:func:`estimate_frame_bounds_from_mid_times<petkfit.utils.time_activity_curve.estimate_frame_bounds_from_mid_times>`.
"""
import os
import logging
from typing import Union
import numpy as np
import pandas as pd
from ..utils import image_io
from ..utils.time_activity_curve import estimate_frame_bounds_from_mid_times
from .kinetic_models import get_kinetic_model, get_parameter_config
from .levenberg_marquardt import DEFAULT_SETTINGS, LevenbergMarquardtSettings
from .parametric_images import build_context_from_blood_file, get_frame_weights
from .voxel_fitting import fit_voxels

logger = logging.getLogger(__name__)


class LiverRegionalAnalysis:
    """
    Fits the dual-input liver model to every region of a regional TACs table.

    Attributes:
        regional_tacs_path (str): Absolute path to the regional TACs TSV file.
        blood_tsv_path (str): Absolute path to the blood input TSV file.
        output_directory (str): Absolute path to the output directory.
        output_filename_prefix (str): Prefix of the output file names.
        scan_times (np.ndarray or None): Frame start/end times of shape ``(num_frm, 2)`` in minutes, if known.
        model_name (str): Name of the fitted kinetic model.
        analysis_props (dict): Dictionary of properties of the analysis.
        fit_params (pd.DataFrame or None): One row per region and one column per parameter, after the analysis.
        fitted_tacs (pd.DataFrame or None): The fitted curves, after the analysis.
    """

    def __init__(self,
                 regional_tacs_path: str,
                 blood_tsv_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 scan_times: Union[np.ndarray, None] = None,
                 model_name: str = 'liver'):
        self.regional_tacs_path = os.path.abspath(regional_tacs_path)
        self.blood_tsv_path = os.path.abspath(blood_tsv_path)
        self.output_directory = os.path.abspath(output_directory)
        self.output_filename_prefix = output_filename_prefix
        self.scan_times = None if scan_times is None else np.asarray(scan_times, dtype=float)
        self.model_name = model_name
        self.model = get_kinetic_model(model_name)
        self.analysis_props = self.init_analysis_props()
        self.fit_params: Union[pd.DataFrame, None] = None
        self.fitted_tacs: Union[pd.DataFrame, None] = None

    def init_analysis_props(self) -> dict:
        props = {
            'FilePathTACs': self.regional_tacs_path,
            'FilePathBlood': self.blood_tsv_path,
            'ModelName': self.model_name,
            'ParameterNames': list(self.model.param_names),
            'RegionNames': None,
            'NumberOfFrames': None,
            'FrameStarts': None,
            'FrameEnds': None,
            'DecayConstant': None,
            'FineTimeStep': None,
            'MaxIterations': None,
            'InitialParameters': None,
            'LowerBounds': None,
            'UpperBounds': None,
            'FixedParameters': None,
            'FitStatus': None,
            'SumOfSquaredResiduals': None,
            'NumberOfIterations': None,
        }
        return props

    def _frame_bounds(self, tac_times: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        if self.scan_times is None:
            return estimate_frame_bounds_from_mid_times(tac_times)
        if self.scan_times.ndim != 2 or self.scan_times.shape != (tac_times.shape[0], 2):
            raise ValueError(f"scan_times must have shape ({tac_times.shape[0]}, 2). Got {self.scan_times.shape}.")
        return self.scan_times[:, 0].copy(), self.scan_times[:, 1].copy()

    def run_analysis(self,
                     initial_params: Union[list, np.ndarray, None] = None,
                     lower_bounds: Union[list, np.ndarray, None] = None,
                     upper_bounds: Union[list, np.ndarray, None] = None,
                     fixed_params: Union[list, None] = None,
                     max_iters: int = 100,
                     decay_constant: float = 0.0,
                     td: Union[float, None] = None,
                     weights: Union[None, str, np.ndarray] = None,
                     settings: LevenbergMarquardtSettings = DEFAULT_SETTINGS) -> None:
        """
        Fits every region of the table.

        The arguments have the same meaning as in
        :meth:`petkfit.kinetic_modeling.parametric_images.LiverParametricImage.run_analysis`, except for
        ``decay_constant``, which defaults to 0 since a TAC table carries no radionuclide metadata.
        """
        tac_times, region_names, tacs = image_io.load_regional_tacs_tsv(self.regional_tacs_path)
        frame_starts, frame_ends = self._frame_bounds(tac_times)
        context = build_context_from_blood_file(blood_tsv_path=self.blood_tsv_path,
                                                frame_starts=frame_starts,
                                                frame_ends=frame_ends,
                                                decay_constant=decay_constant,
                                                td=td)
        init, lower, upper, free_mask = get_parameter_config(model=self.model,
                                                             initial_params=initial_params,
                                                             lower_bounds=lower_bounds,
                                                             upper_bounds=upper_bounds,
                                                             fixed_params=fixed_params)
        frame_weights = get_frame_weights(weights, context.frame_durations)

        logger.info(f"Fitting {len(region_names)} regions of {self.regional_tacs_path}.")
        results = fit_voxels(model=self.model, context=context, tacs=tacs, weights=frame_weights,
                             initial_params=init, lower_bounds=lower, upper_bounds=upper, free_mask=free_mask,
                             max_iters=max_iters, settings=settings)

        self.fit_params = pd.DataFrame(results.params.T, columns=list(self.model.param_names))
        self.fit_params.insert(0, 'region', region_names)
        self.fit_params['sse'] = results.sse
        self.fit_params['iterations'] = results.num_iterations
        self.fit_params['status'] = results.status

        self.fitted_tacs = pd.DataFrame(results.fitted_tacs, columns=region_names)
        self.fitted_tacs.insert(0, 'frame_end', frame_ends)
        self.fitted_tacs.insert(0, 'frame_start', frame_starts)

        self.analysis_props['RegionNames'] = region_names
        self.analysis_props['NumberOfFrames'] = int(context.num_frm)
        self.analysis_props['FrameStarts'] = frame_starts.tolist()
        self.analysis_props['FrameEnds'] = frame_ends.tolist()
        self.analysis_props['DecayConstant'] = float(decay_constant)
        self.analysis_props['FineTimeStep'] = context.td
        self.analysis_props['MaxIterations'] = int(max_iters)
        self.analysis_props['InitialParameters'] = init.tolist()
        self.analysis_props['LowerBounds'] = lower.tolist()
        self.analysis_props['UpperBounds'] = upper.tolist()
        self.analysis_props['FixedParameters'] = [name for name, is_free in
                                                  zip(self.model.param_names, free_mask) if not is_free]
        self.analysis_props['FitStatus'] = dict(zip(region_names, results.status))
        self.analysis_props['SumOfSquaredResiduals'] = dict(zip(region_names, results.sse.tolist()))
        self.analysis_props['NumberOfIterations'] = dict(zip(region_names, results.num_iterations.tolist()))

    def save_analysis(self) -> None:
        """
        Saves the fitted parameters, the fitted curves and the analysis properties.

        The files are ``{prefix}_model-{model}_desc-params.tsv``, ``{prefix}_model-{model}_desc-fit.tsv`` and
        ``{prefix}_model-{model}_desc-props.json``.

        Raises:
            RuntimeError: If :meth:`run_analysis` has not been called before this method.
        """
        if self.fit_params is None:
            raise RuntimeError("'run_analysis' method must be called before 'save_analysis'.")
        os.makedirs(self.output_directory, exist_ok=True)
        self.fit_params.to_csv(self._output_path('params', '.tsv'), sep='\t', index=False)
        self.fitted_tacs.to_csv(self._output_path('fit', '.tsv'), sep='\t', index=False)
        image_io.write_dict_to_json(meta_data_dict=self.analysis_props,
                                    out_path=self._output_path('props', '.json'))
        logger.info(f"Saved regional fits to {self.output_directory}.")

    def _output_path(self, desc: str, ext: str) -> str:
        return os.path.join(self.output_directory,
                            f"{self.output_filename_prefix}_model-{self.model_name}_desc-{desc}{ext}")

    def __call__(self, **run_kwargs):
        self.run_analysis(**run_kwargs)
        self.save_analysis()
