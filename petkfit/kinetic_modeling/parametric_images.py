"""
This module provides :class:`LiverParametricImage`, which fits the dual-input liver model to every voxel of a 4D-PET
image and saves the resulting parametric images.

The class reads:
    * a 4D-PET NIfTI image, with a BIDS JSON sidecar providing ``FrameDuration`` (and optionally
      ``FrameTimesStart``, ``RadionuclideHalfLife`` or ``TracerRadionuclide``),
    * a blood input TSV file with sample times, plasma activity and whole-blood activity,
    * optionally, a 3D mask restricting the fit to a set of voxels.

The blood curves are frame-averaged onto the PET frames, the voxel TACs inside the mask are fit with
:func:`fit_voxels<petkfit.kinetic_modeling.voxel_fitting.fit_voxels>`, and the results are saved as one 3D image per
model parameter, a 4D image of fitted curves, a 3D image of fit status codes, and a JSON file of analysis properties.
"""

import os
import logging
import warnings
from typing import Union
import numpy as np
from ..utils import image_io
from .kinetic_model_context import KineticModelContext
from .kinetic_models import get_kinetic_model, get_parameter_config
from .levenberg_marquardt import (DEFAULT_SETTINGS,
                                  STATUS_CONVERGED,
                                  STATUS_MAX_ITERATIONS,
                                  STATUS_NO_FREE_PARAMETERS,
                                  STATUS_STALLED,
                                  LevenbergMarquardtSettings)
from .voxel_fitting import fit_voxels

logger = logging.getLogger(__name__)

#: Integer codes written to the status image. Voxels outside the mask are 0.
STATUS_CODES = {STATUS_CONVERGED: 1,
                STATUS_NO_FREE_PARAMETERS: 1,
                STATUS_MAX_ITERATIONS: 2,
                STATUS_STALLED: 3}


def build_context_from_blood_file(blood_tsv_path: str,
                                  frame_starts: np.ndarray,
                                  frame_ends: np.ndarray,
                                  decay_constant: float,
                                  td: Union[float, None]) -> KineticModelContext:
    """
    Frame-averages the blood input curves of a TSV file and builds the fitting context.

    Args:
        blood_tsv_path (str): Path to the blood input TSV file. See :func:`petkfit.utils.image_io.load_blood_tsv`.
        frame_starts (np.ndarray): Frame start times, in minutes.
        frame_ends (np.ndarray): Frame end times, in minutes.
        decay_constant (float): Decay constant, in 1/minutes.
        td (float, optional): Fine-grid time step, in minutes.

    Returns:
        KineticModelContext: The context shared by every fit.
    """
    blood = image_io.load_blood_tsv(blood_tsv_path)
    plasma = image_io.frame_average_curve(blood['times'], blood['plasma'], frame_starts, frame_ends)
    whole_blood = image_io.frame_average_curve(blood['times'], blood['whole_blood'], frame_starts, frame_ends)
    return KineticModelContext.from_scan_data(scan_times=np.stack([frame_starts, frame_ends], axis=1),
                                              plasma_tac=plasma,
                                              whole_blood_tac=whole_blood,
                                              decay_constant=decay_constant,
                                              td=td)


def get_frame_weights(weights: Union[None, str, np.ndarray], frame_durations: np.ndarray) -> np.ndarray:
    """
    Resolves the frame weights of a fit.

    Args:
        weights (None, str or np.ndarray): If None, all frames are equally weighted. If ``'duration'``, frames are
            weighted by their duration. If an array, it is used as is.
        frame_durations (np.ndarray): Duration of each frame.

    Returns:
        np.ndarray: One weight per frame.

    Raises:
        ValueError: If ``weights`` is an unknown string.
    """
    if weights is None:
        return np.ones_like(frame_durations, dtype=float)
    if isinstance(weights, str):
        if weights != 'duration':
            raise ValueError(f"Invalid weighting! Must be None, 'duration' or an array. Got {weights}.")
        return np.asarray(frame_durations, dtype=float)
    return np.asarray(weights, dtype=float)


class LiverParametricImage:
    """
    Class for generating parametric images of 4D-PET images by voxel-wise fitting of the dual-input liver model.

    Attributes:
        pet4D_img_path (str): Absolute path to the 4D PET image file.
        blood_tsv_path (str): Absolute path to the blood input TSV file.
        mask_img_path (str or None): Absolute path to the mask image, if any.
        output_directory (str): Absolute path to the output directory.
        output_filename_prefix (str): Prefix of the output file names.
        model_name (str): Name of the fitted kinetic model.
        analysis_props (dict): Dictionary of properties of the analysis.
        parameter_images (dict[str, np.ndarray] or None): One 3D image per model parameter, after the analysis.
        fitted_image (np.ndarray or None): 4D image of the fitted curves, after the analysis.
        status_image (np.ndarray or None): 3D image of fit status codes, after the analysis.
    """

    def __init__(self,
                 pet4D_img_path: str,
                 blood_tsv_path: str,
                 output_directory: str,
                 output_filename_prefix: str,
                 mask_img_path: Union[str, None] = None,
                 model_name: str = 'liver') -> None:
        """
        Initializes the LiverParametricImage with the specified paths.

        Args:
            pet4D_img_path (str): Path to the 4D PET image file.
            blood_tsv_path (str): Path to the blood input TSV file.
            output_directory (str): Path to the directory where output files will be saved.
            output_filename_prefix (str): Prefix to use for the names of the output files.
            mask_img_path (str, optional): Path to a 3D mask image. If None, every voxel is fit.
            model_name (str): Name of the kinetic model. Defaults to ``'liver'``.
        """
        self.pet4D_img_path = os.path.abspath(pet4D_img_path)
        self.blood_tsv_path = os.path.abspath(blood_tsv_path)
        self.mask_img_path = None if mask_img_path is None else os.path.abspath(mask_img_path)
        self.output_directory = os.path.abspath(output_directory)
        self.output_filename_prefix = output_filename_prefix
        self.model_name = model_name
        self.model = get_kinetic_model(model_name)
        self.analysis_props = self.init_analysis_props()
        self.parameter_images: Union[dict, None] = None
        self.fitted_image: Union[np.ndarray, None] = None
        self.status_image: Union[np.ndarray, None] = None

    def init_analysis_props(self) -> dict:
        """
        Initializes the analysis properties dictionary.

        Most values are None and are filled in by :meth:`run_analysis`.

        Returns:
            props (dict): The initialized properties dictionary.
        """
        props = {
            'FilePathPET': self.pet4D_img_path,
            'FilePathBlood': self.blood_tsv_path,
            'FilePathMask': self.mask_img_path,
            'ModelName': self.model_name,
            'ParameterNames': list(self.model.param_names),
            'ImageDimensions': None,
            'NumberOfFrames': None,
            'NumberOfVoxelsFit': None,
            'DecayConstant': None,
            'FineTimeStep': None,
            'MaxIterations': None,
            'InitialParameters': None,
            'LowerBounds': None,
            'UpperBounds': None,
            'FixedParameters': None,
            'StatusCounts': None,
            'ParameterStatistics': None,
        }
        return props

    def _resolve_decay_constant(self, decay_constant: Union[float, None]) -> float:
        if decay_constant is not None:
            return float(decay_constant)
        metadata = image_io.load_metadata_for_nifti_with_same_filename(self.pet4D_img_path)
        try:
            half_life_in_mins = image_io.get_half_life_from_meta(metadata) / 60.0
        except KeyError as err:
            warnings.warn(f"{err} No decay is applied to the model.", UserWarning, stacklevel=3)
            return 0.0
        return image_io.decay_constant_from_half_life(half_life_in_mins)

    def run_analysis(self,
                     initial_params: Union[list, np.ndarray, None] = None,
                     lower_bounds: Union[list, np.ndarray, None] = None,
                     upper_bounds: Union[list, np.ndarray, None] = None,
                     fixed_params: Union[list, None] = None,
                     max_iters: int = 100,
                     decay_constant: Union[float, None] = None,
                     td: Union[float, None] = None,
                     weights: Union[None, str, np.ndarray] = None,
                     settings: LevenbergMarquardtSettings = DEFAULT_SETTINGS) -> None:
        """
        Fits every voxel inside the mask and stores the parametric images.

        Args:
            initial_params (list, optional): Initial guess of each parameter. Defaults to the model defaults.
            lower_bounds (list, optional): Lower bound of each parameter. Defaults to the model defaults.
            upper_bounds (list, optional): Upper bound of each parameter. Defaults to the model defaults.
            fixed_params (list[str], optional): Names of parameters held at their initial value.
            max_iters (int): Maximum number of solver iterations per voxel. Defaults to 100.
            decay_constant (float, optional): Decay constant in 1/minutes. If None, it is derived from the
                radionuclide half-life in the image sidecar; 0 is used, with a warning, if the sidecar has none.
            td (float, optional): Fine-grid time step in minutes. If None, a quarter of the shortest frame.
            weights (None, str or np.ndarray): Frame weights. See :func:`get_frame_weights`.
            settings (LevenbergMarquardtSettings): Solver tuning constants.

        Raises:
            ValueError: If the image, its frame timing, the mask and the fit configuration are inconsistent.
        """
        pet_img = image_io.safe_load_4dpet_nifti(filename=self.pet4D_img_path)
        frame_info = image_io.get_frame_timing_info_for_nifti(image_path=self.pet4D_img_path)
        spatial_shape = pet_img.shape[:3]
        num_frm = pet_img.shape[3]
        if frame_info['duration'].shape[0] != num_frm:
            raise ValueError(f"The image has {num_frm} frames but its metadata describes "
                             f"{frame_info['duration'].shape[0]} frames.")
        if self.mask_img_path is None:
            mask = np.ones(spatial_shape, dtype=bool)
        else:
            mask = image_io.load_mask(self.mask_img_path, spatial_shape)

        decay_constant = self._resolve_decay_constant(decay_constant)
        context = build_context_from_blood_file(blood_tsv_path=self.blood_tsv_path,
                                                frame_starts=frame_info['start'],
                                                frame_ends=frame_info['end'],
                                                decay_constant=decay_constant,
                                                td=td)
        init, lower, upper, free_mask = get_parameter_config(model=self.model,
                                                             initial_params=initial_params,
                                                             lower_bounds=lower_bounds,
                                                             upper_bounds=upper_bounds,
                                                             fixed_params=fixed_params)
        frame_weights = get_frame_weights(weights, context.frame_durations)

        pet_data = np.asarray(pet_img.get_fdata(), dtype=float)
        voxel_tacs = pet_data[mask].T
        logger.info(f"Fitting {voxel_tacs.shape[1]} voxels of {self.pet4D_img_path}.")
        results = fit_voxels(model=self.model, context=context, tacs=voxel_tacs, weights=frame_weights,
                             initial_params=init, lower_bounds=lower, upper_bounds=upper, free_mask=free_mask,
                             max_iters=max_iters, settings=settings)

        self.parameter_images = {}
        for par_id, par_name in enumerate(self.model.param_names):
            par_img = np.zeros(spatial_shape, float)
            par_img[mask] = results.params[par_id]
            self.parameter_images[par_name] = par_img
        self.fitted_image = np.zeros(pet_data.shape, float)
        self.fitted_image[mask] = results.fitted_tacs.T
        self.status_image = np.zeros(spatial_shape, np.int16)
        self.status_image[mask] = [STATUS_CODES[a_status] for a_status in results.status]

        self.analysis_props['ImageDimensions'] = list(spatial_shape)
        self.analysis_props['NumberOfFrames'] = int(num_frm)
        self.analysis_props['NumberOfVoxelsFit'] = int(results.num_vox)
        self.analysis_props['DecayConstant'] = decay_constant
        self.analysis_props['FineTimeStep'] = context.td
        self.analysis_props['MaxIterations'] = int(max_iters)
        self.analysis_props['InitialParameters'] = init.tolist()
        self.analysis_props['LowerBounds'] = lower.tolist()
        self.analysis_props['UpperBounds'] = upper.tolist()
        self.analysis_props['FixedParameters'] = [name for name, is_free in
                                                  zip(self.model.param_names, free_mask) if not is_free]
        self.analysis_props['StatusCounts'] = results.status_counts()
        self.calculate_parameter_statistics(results.params)

    def calculate_parameter_statistics(self, params: np.ndarray) -> None:
        """
        Calculates the maximum, minimum, mean and variance of every fitted parameter over the fitted voxels.

        Args:
            params (np.ndarray): Fitted parameters, shape ``(num_par, num_vox)``.
        """
        stats = {}
        for par_id, par_name in enumerate(self.model.param_names):
            vals = params[par_id]
            if vals.size == 0:
                stats[par_name] = None
                continue
            stats[par_name] = {'Maximum': float(np.max(vals)),
                               'Minimum': float(np.min(vals)),
                               'Mean': float(np.mean(vals)),
                               'Variance': float(np.var(vals))}
        self.analysis_props['ParameterStatistics'] = stats

    def save_analysis(self) -> None:
        """
        Saves the parametric images and the analysis properties.

        Raises:
            RuntimeError: If :meth:`run_analysis` has not been called before this method.
        """
        if self.parameter_images is None:
            raise RuntimeError("'run_analysis' method must be called before 'save_analysis'.")
        os.makedirs(self.output_directory, exist_ok=True)
        self.save_parametric_images()
        self.save_analysis_properties()

    def __call__(self, **run_kwargs):
        self.run_analysis(**run_kwargs)
        self.save_analysis()

    def _output_path(self, desc: str, ext: str) -> str:
        return os.path.join(self.output_directory,
                            f"{self.output_filename_prefix}_model-{self.model_name}_desc-{desc}{ext}")

    def save_parametric_images(self) -> None:
        """
        Saves one NIfTI file per parameter, the fitted 4D image and the status image.

        The files follow the pattern ``{prefix}_model-{model}_desc-{name}.nii.gz`` where ``name`` is a parameter name,
        ``fit`` or ``status``. The affine of the 4D PET image is kept.
        """
        pet_img = image_io.safe_load_4dpet_nifti(filename=self.pet4D_img_path)
        for par_name, par_img in self.parameter_images.items():
            image_io.save_image_like(par_img, pet_img, self._output_path(par_name, '.nii.gz'))
        image_io.save_image_like(self.fitted_image, pet_img, self._output_path('fit', '.nii.gz'))
        image_io.save_image_like(self.status_image, pet_img, self._output_path('status', '.nii.gz'))
        logger.info(f"Saved parametric images to {self.output_directory}.")

    def save_analysis_properties(self) -> None:
        """Saves the analysis properties to ``{prefix}_model-{model}_desc-props.json``."""
        image_io.write_dict_to_json(meta_data_dict=self.analysis_props,
                                    out_path=self._output_path('props', '.json'))
