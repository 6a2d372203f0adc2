"""
Image and TAC IO

Helpers to read the inputs of the kinetic fits (4D PET NIfTI images with their BIDS JSON sidecars, blood input
tables, regional TAC tables) and to write their outputs.

All times returned by this module are in minutes.

PET radionuclide half life source: code borrowed from DynamicPET
(https://github.com/bilgelm/dynamicpet/blob/main/src/dynamicpet/petbids/petbidsjson.py), derived
from TPC (turkupetcentre.net/petanalysis/decay.html). This source is from:
Table of Isotopes, Sixth edition, edited by C.M. Lederer, J.M. Hollander, I. Perlman. WILEY, 1967.
"""
import json
import re
import os
import nibabel
import numpy as np
import pandas as pd
from scipy.integrate import cumulative_trapezoid


_HALFLIVES_ = {
    "c11": 1224,
    "n13": 599,
    "o15": 123,
    "f18": 6588,
    "cu62": 582,
    "cu64": 45721.1,
    "ga68": 4080,
    "ge68": 23760000,
    "br76": 58700,
    "rb82": 75,
    "zr89": 282240,
    "i124": 360806.4,
}


def write_dict_to_json(meta_data_dict: dict, out_path: str):
    """
    Save a dictionary of analysis properties or metadata to a JSON file.

    Args:
        meta_data_dict (dict): The dictionary to be saved. Numpy scalars and arrays are converted to plain Python
            types.
        out_path (str): Path of the JSON file.
    """
    with open(out_path, 'w', encoding='utf-8') as copy_file:
        json.dump(meta_data_dict, copy_file, indent=4, default=_json_default)


def _json_default(obj):
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _gen_meta_data_filepath_for_nifti(nifty_path: str):
    """
    Path of the BIDS JSON sidecar of a NIfTI image.

    Args:
        nifty_path (str): Path to a `.nii` or `.nii.gz` image.

    Returns:
        str: The same path with a `.json` extension.
    """
    meta_data_path = re.sub(r'\.nii\.gz$|\.nii$', '.json', nifty_path)
    return meta_data_path


def safe_load_meta(input_metadata_file: str) -> dict:
    """
    Loads a JSON metadata file.

    Args:
        input_metadata_file (str): Path of the JSON file.

    Returns:
        metadata (dict): The parsed metadata.

    Raises:
        FileNotFoundError: If the metadata file does not exist.
    """
    if not os.path.exists(input_metadata_file):
        raise FileNotFoundError(f"Metadata file {input_metadata_file} not found. Does it have a "
                                "different path?")

    with open(input_metadata_file, 'r', encoding='utf-8') as meta_file:
        metadata = json.load(meta_file)
    return metadata


def load_metadata_for_nifti_with_same_filename(image_path) -> dict:
    """
    Loads the BIDS sidecar of an image. Assumes the same path as the image, with a `.json` extension.

    Args:
        image_path (str): Path to the image.

    Returns:
        metadata (dict): Dictionary where keys are fields in the image metadata file.

    Raises:
        FileNotFoundError: If the image or its metadata file cannot be found.
    """
    if not os.path.exists(image_path):
        raise FileNotFoundError(f"Image file {image_path} not found.")

    meta_path = _gen_meta_data_filepath_for_nifti(image_path)
    return safe_load_meta(input_metadata_file=meta_path)


def get_half_life_from_meta(metadata: dict) -> float:
    """
    Radionuclide half-life, in seconds, from image metadata.

    Uses ``RadionuclideHalfLife`` if present, otherwise looks up ``TracerRadionuclide`` in a table of common PET
    radionuclides.

    Args:
        metadata (dict): BIDS metadata of a PET image.

    Returns:
        float: The half-life in seconds.

    Raises:
        KeyError: If neither key is present, or if the radionuclide is unknown.
    """
    if 'RadionuclideHalfLife' in metadata:
        return float(metadata['RadionuclideHalfLife'])
    try:
        radionuclide = metadata['TracerRadionuclide'].lower().replace("-", "")
    except KeyError as exc:
        raise KeyError("Required BIDS metadata field 'RadionuclideHalfLife' or 'TracerRadionuclide' "
                       "not found.") from exc
    try:
        return float(_HALFLIVES_[radionuclide])
    except KeyError as exc:
        raise KeyError(f"Unknown radionuclide '{metadata['TracerRadionuclide']}'.") from exc


def decay_constant_from_half_life(half_life_in_mins: float) -> float:
    """Decay constant :math:`\\lambda=\\ln(2)/T_{1/2}` in 1/minutes."""
    if half_life_in_mins <= 0:
        raise ValueError(f"The half-life must be positive. Got {half_life_in_mins}.")
    return float(np.log(2.0) / half_life_in_mins)


def get_frame_timing_info_for_nifti(image_path: str) -> dict[str, np.ndarray]:
    r"""
    Extracts frame timing information from the BIDS sidecar of a 4D PET image.

    Expects a ``FrameDuration`` key, in seconds. ``FrameTimesStart`` is used when present; otherwise the frames are
    assumed to be contiguous and to start at 0.

    Args:
        image_path (str): Path to the NIfTI image file.

    Returns:
        dict: Frame timing information, in minutes, with the following keys:
            - `duration` (np.ndarray): Frame durations.
            - `start` (np.ndarray): Frame start times.
            - `end` (np.ndarray): Frame end times.

    Raises:
        KeyError: If ``FrameDuration`` is missing from the metadata.
    """
    meta_data = load_metadata_for_nifti_with_same_filename(image_path=image_path)
    try:
        frm_dur = np.asarray(meta_data['FrameDuration'], float)
    except KeyError as exc:
        raise KeyError(f"Required BIDS metadata field 'FrameDuration' not found for {image_path}.") from exc
    try:
        frm_starts = np.asarray(meta_data['FrameTimesStart'], float)
    except KeyError:
        frm_starts = np.cumsum(frm_dur) - frm_dur

    frm_info = {'duration': frm_dur / 60.0,
                'start': frm_starts / 60.0,
                'end': (frm_starts + frm_dur) / 60.0}
    return frm_info


def load_blood_tsv(filename: str) -> dict[str, np.ndarray]:
    """
    Loads a blood input table.

    The TSV file must have a header row and at least three columns: sample time, plasma activity and whole-blood
    activity, in that order. Times larger than 300 are assumed to be in seconds and converted to minutes.

    Args:
        filename (str): Path to the TSV file.

    Returns:
        dict: ``{'times': ..., 'plasma': ..., 'whole_blood': ...}``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the table has fewer than three columns, or fewer than two rows.
    """
    if not os.path.exists(filename):
        raise FileNotFoundError(f"Blood input file {filename} not found.")
    blood_df = pd.read_csv(filename, sep='\t')
    if blood_df.shape[1] < 3:
        raise ValueError(f"Blood input file {filename} must have time, plasma and whole-blood columns. "
                         f"Got columns {list(blood_df.columns)}.")
    if blood_df.shape[0] < 2:
        raise ValueError(f"Blood input file {filename} must have at least two samples.")
    blood_vals = blood_df.iloc[:, :3].to_numpy(dtype=float)
    times = blood_vals[:, 0].copy()
    if np.max(times) >= 300:
        times /= 60.0
    return {'times': times, 'plasma': blood_vals[:, 1].copy(), 'whole_blood': blood_vals[:, 2].copy()}


def load_regional_tacs_tsv(filename: str) -> tuple[np.ndarray, list[str], np.ndarray]:
    """
    Loads a table of regional TACs.

    The TSV file must have a header row. The first column holds the frame mid-times, and every other column holds
    the TAC of one region.

    Args:
        filename (str): Path to the TSV file.

    Returns:
        tuple: The frame times (in minutes), the region names, and the TACs with shape ``(num_frm, num_regions)``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the table has no region column.
    """
    if not os.path.exists(filename):
        raise FileNotFoundError(f"Regional TACs file {filename} not found.")
    tacs_df = pd.read_csv(filename, sep='\t')
    if tacs_df.shape[1] < 2:
        raise ValueError(f"Regional TACs file {filename} must have a time column and at least one region column.")
    times = tacs_df.iloc[:, 0].to_numpy(dtype=float)
    if np.max(times) >= 300:
        times = times / 60.0
    region_names = [str(col) for col in tacs_df.columns[1:]]
    return times, region_names, tacs_df.iloc[:, 1:].to_numpy(dtype=float)


def frame_average_curve(times: np.ndarray,
                        values: np.ndarray,
                        frame_starts: np.ndarray,
                        frame_ends: np.ndarray) -> np.ndarray:
    r"""
    Averages a sampled curve over each frame.

    The curve is linearly interpolated between samples (0 before the first sample time if that time is positive,
    constant after the last one), and integrated exactly over :math:`[t_s, t_e]` for each frame:

    .. math::

        \bar{C}_k = \frac{1}{t_{e,k}-t_{s,k}}\int_{t_{s,k}}^{t_{e,k}} C(t)\,\mathrm{d}t

    Args:
        times (np.ndarray): Sample times, in minutes, strictly increasing.
        values (np.ndarray): Sample values.
        frame_starts (np.ndarray): Frame start times, in minutes.
        frame_ends (np.ndarray): Frame end times, in minutes.

    Returns:
        np.ndarray: The frame-averaged curve.

    Raises:
        ValueError: If the sample times are not strictly increasing.
    """
    times = np.asarray(times, dtype=float)
    values = np.asarray(values, dtype=float)
    if np.any(np.diff(times) <= 0.0):
        raise ValueError("Sample times must be strictly increasing.")
    if times[0] > 0.0:
        times = np.concatenate(([0.0], times))
        values = np.concatenate(([0.0], values))
    knots = np.unique(np.concatenate((times, frame_starts, frame_ends)))
    knot_vals = np.interp(knots, times, values)
    integral = cumulative_trapezoid(knot_vals, knots, initial=0.0)
    int_ends = np.interp(frame_ends, knots, integral)
    int_starts = np.interp(frame_starts, knots, integral)
    return (int_ends - int_starts) / (np.asarray(frame_ends) - np.asarray(frame_starts))


def safe_load_4dpet_nifti(filename: str) -> nibabel.nifti1.Nifti1Image:
    """
    Loads a 4D PET NIfTI image, checking its extension and dimensionality.

    Args:
        filename (str): Path to the image.

    Returns:
        Nifti1Image: The 4D image. Its data is not loaded until requested.

    Raises:
        ValueError: If the file does not have a '.nii' or '.nii.gz' extension, or if the image is not 4D.
    """
    if not filename.endswith(('.nii', '.nii.gz')):
        raise ValueError(
            "Invalid file extension. Only '.nii' and '.nii.gz' are supported.")

    image = nibabel.load(filename)
    if len(image.shape) != 4:
        raise ValueError(f"Expected a 4D PET image. {filename} has shape {image.shape}.")
    return image


def load_mask(filename: str, spatial_shape: tuple) -> np.ndarray:
    """
    Loads a 3D mask image as a boolean array, checking that it matches the spatial shape of the PET image.

    Args:
        filename (str): Path to the mask image.
        spatial_shape (tuple): Expected shape of the mask.

    Returns:
        np.ndarray: Boolean mask.

    Raises:
        ValueError: If the mask does not have the expected shape.
    """
    mask_img = nibabel.load(filename)
    mask = np.asarray(mask_img.dataobj) > 0
    if mask.shape != tuple(spatial_shape):
        raise ValueError(f"The mask {filename} has shape {mask.shape}, expected {tuple(spatial_shape)}.")
    return mask


def save_image_like(image_array: np.ndarray,
                    reference_image: nibabel.nifti1.Nifti1Image,
                    out_path: str) -> nibabel.nifti1.Nifti1Image:
    """
    Saves an array as a NIfTI image with the affine and header of a reference image.

    Args:
        image_array (np.ndarray): Array containing image data.
        reference_image (nibabel.nifti1.Nifti1Image): Image providing the affine and header.
        out_path (str): File path to which the image will be written.

    Returns:
        nibabel.nifti1.Nifti1Image: The saved image.
    """
    header = reference_image.header.copy()
    header.set_data_dtype(np.float32)
    out_image = nibabel.nifti1.Nifti1Image(np.asarray(image_array, dtype=np.float32), reference_image.affine, header)
    nibabel.save(out_image, out_path)
    return out_image
