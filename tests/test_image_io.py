import json
import os
import tempfile
import unittest
import nibabel as nib
import numpy as np
import pandas as pd
from petkfit.utils import image_io
from petkfit.utils.time_activity_curve import estimate_frame_bounds_from_mid_times


def write_sidecar(image_path, metadata):
    with open(image_io._gen_meta_data_filepath_for_nifti(image_path), 'w', encoding='utf-8') as meta_file:
        json.dump(metadata, meta_file)


class TestMetadata(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.image_path = os.path.join(self.tmp_dir.name, 'sub-001_pet.nii.gz')
        nib.save(nib.Nifti1Image(np.ones((2, 2, 1, 3), dtype=np.float32), np.eye(4)), self.image_path)

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_sidecar_path(self):
        self.assertEqual(image_io._gen_meta_data_filepath_for_nifti('/a/b_pet.nii.gz'), '/a/b_pet.json')
        self.assertEqual(image_io._gen_meta_data_filepath_for_nifti('/a/b_pet.nii'), '/a/b_pet.json')

    def test_frame_timing_from_durations(self):
        write_sidecar(self.image_path, {'FrameDuration': [30, 30, 60]})
        frm_info = image_io.get_frame_timing_info_for_nifti(self.image_path)
        np.testing.assert_allclose(frm_info['duration'], [0.5, 0.5, 1.0])
        np.testing.assert_allclose(frm_info['start'], [0.0, 0.5, 1.0])
        np.testing.assert_allclose(frm_info['end'], [0.5, 1.0, 2.0])

    def test_frame_timing_with_start_times(self):
        write_sidecar(self.image_path, {'FrameDuration': [30, 30, 60], 'FrameTimesStart': [60, 90, 120]})
        frm_info = image_io.get_frame_timing_info_for_nifti(self.image_path)
        np.testing.assert_allclose(frm_info['start'], [1.0, 1.5, 2.0])
        np.testing.assert_allclose(frm_info['end'], [1.5, 2.0, 3.0])

    def test_missing_frame_duration(self):
        write_sidecar(self.image_path, {'FrameTimesStart': [0, 30, 60]})
        with self.assertRaises(KeyError):
            image_io.get_frame_timing_info_for_nifti(self.image_path)

    def test_missing_sidecar(self):
        with self.assertRaises(FileNotFoundError):
            image_io.load_metadata_for_nifti_with_same_filename(self.image_path)

    def test_half_life(self):
        self.assertEqual(image_io.get_half_life_from_meta({'RadionuclideHalfLife': 1224.0}), 1224.0)
        self.assertEqual(image_io.get_half_life_from_meta({'TracerRadionuclide': 'F-18'}), 6588.0)
        with self.assertRaises(KeyError):
            image_io.get_half_life_from_meta({})
        with self.assertRaises(KeyError):
            image_io.get_half_life_from_meta({'TracerRadionuclide': 'Xx-999'})

    def test_decay_constant(self):
        self.assertAlmostEqual(image_io.decay_constant_from_half_life(109.8), np.log(2.0) / 109.8)
        with self.assertRaises(ValueError):
            image_io.decay_constant_from_half_life(0.0)

    def test_json_writer_handles_numpy_types(self):
        out_path = os.path.join(self.tmp_dir.name, 'props.json')
        image_io.write_dict_to_json({'a': np.arange(3), 'b': np.float64(1.5), 'c': np.int64(2)}, out_path)
        self.assertEqual(image_io.safe_load_meta(out_path), {'a': [0, 1, 2], 'b': 1.5, 'c': 2})


class TestImages(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.affine = np.diag([2.0, 2.0, 3.0, 1.0])

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_load_4d_pet(self):
        path_4d = os.path.join(self.tmp_dir.name, 'pet.nii.gz')
        path_3d = os.path.join(self.tmp_dir.name, 'mask.nii.gz')
        nib.save(nib.Nifti1Image(np.ones((2, 2, 1, 3), dtype=np.float32), self.affine), path_4d)
        nib.save(nib.Nifti1Image(np.ones((2, 2, 1), dtype=np.float32), self.affine), path_3d)
        self.assertEqual(image_io.safe_load_4dpet_nifti(path_4d).shape, (2, 2, 1, 3))
        with self.assertRaises(ValueError):
            image_io.safe_load_4dpet_nifti(path_3d)
        with self.assertRaises(ValueError):
            image_io.safe_load_4dpet_nifti(os.path.join(self.tmp_dir.name, 'pet.img'))

    def test_mask_and_save_image_like(self):
        pet_path = os.path.join(self.tmp_dir.name, 'pet.nii.gz')
        mask_path = os.path.join(self.tmp_dir.name, 'mask.nii.gz')
        pet_img = nib.Nifti1Image(np.ones((2, 2, 1, 3), dtype=np.float32), self.affine)
        nib.save(pet_img, pet_path)
        mask = np.array([[[1], [0]], [[2], [1]]], dtype=np.int16)
        nib.save(nib.Nifti1Image(mask, self.affine), mask_path)
        np.testing.assert_array_equal(image_io.load_mask(mask_path, (2, 2, 1)), mask > 0)
        with self.assertRaises(ValueError):
            image_io.load_mask(mask_path, (2, 2, 2))

        out_path = os.path.join(self.tmp_dir.name, 'param.nii.gz')
        image_io.save_image_like(np.full((2, 2, 1), 0.5), nib.load(pet_path), out_path)
        saved = nib.load(out_path)
        self.assertEqual(saved.shape, (2, 2, 1))
        np.testing.assert_allclose(saved.affine, self.affine)
        np.testing.assert_allclose(saved.get_fdata(), 0.5)


class TestTables(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_load_blood_tsv_converts_seconds(self):
        path = os.path.join(self.tmp_dir.name, 'blood.tsv')
        pd.DataFrame({'time': [0.0, 60.0, 600.0], 'plasma': [0.0, 2.0, 1.0],
                      'whole_blood': [0.0, 1.8, 0.9]}).to_csv(path, sep='\t', index=False)
        blood = image_io.load_blood_tsv(path)
        np.testing.assert_allclose(blood['times'], [0.0, 1.0, 10.0])
        np.testing.assert_allclose(blood['plasma'], [0.0, 2.0, 1.0])
        np.testing.assert_allclose(blood['whole_blood'], [0.0, 1.8, 0.9])

    def test_load_blood_tsv_errors(self):
        with self.assertRaises(FileNotFoundError):
            image_io.load_blood_tsv(os.path.join(self.tmp_dir.name, 'missing.tsv'))
        path = os.path.join(self.tmp_dir.name, 'blood.tsv')
        pd.DataFrame({'time': [0.0, 1.0], 'plasma': [0.0, 2.0]}).to_csv(path, sep='\t', index=False)
        with self.assertRaises(ValueError):
            image_io.load_blood_tsv(path)

    def test_load_regional_tacs(self):
        path = os.path.join(self.tmp_dir.name, 'tacs.tsv')
        pd.DataFrame({'time': [0.25, 0.75, 1.5], 'liver': [1.0, 2.0, 3.0],
                      'spleen': [0.5, 0.6, 0.7]}).to_csv(path, sep='\t', index=False)
        times, names, tacs = image_io.load_regional_tacs_tsv(path)
        np.testing.assert_allclose(times, [0.25, 0.75, 1.5])
        self.assertEqual(names, ['liver', 'spleen'])
        self.assertEqual(tacs.shape, (3, 2))
        np.testing.assert_allclose(tacs[:, 1], [0.5, 0.6, 0.7])


class TestFrameAveraging(unittest.TestCase):
    def test_linear_curve(self):
        times = np.array([0.0, 1.0, 2.0, 4.0])
        out = image_io.frame_average_curve(times, 2.0 * times, np.array([0.0, 1.0, 1.5]), np.array([1.0, 3.0, 4.0]))
        np.testing.assert_allclose(out, [1.0, 4.0, 5.5])

    def test_curve_is_zero_before_first_sample(self):
        out = image_io.frame_average_curve(np.array([1.0, 2.0]), np.array([1.0, 1.0]),
                                           np.array([0.0]), np.array([2.0]))
        np.testing.assert_allclose(out, [0.75])

    def test_constant_after_last_sample(self):
        out = image_io.frame_average_curve(np.array([0.0, 1.0]), np.array([3.0, 3.0]),
                                           np.array([2.0]), np.array([5.0]))
        np.testing.assert_allclose(out, [3.0])

    def test_unordered_samples(self):
        with self.assertRaises(ValueError):
            image_io.frame_average_curve(np.array([0.0, 2.0, 1.0]), np.ones(3), np.array([0.0]), np.array([1.0]))


class TestFrameBoundsFromMidTimes(unittest.TestCase):
    def test_contiguous_frames_are_recovered(self):
        starts = np.array([0.0, 0.5, 1.0, 2.0])
        ends = np.array([0.5, 1.0, 2.0, 4.0])
        est_starts, est_ends = estimate_frame_bounds_from_mid_times((starts + ends) / 2.0)
        np.testing.assert_allclose(est_ends[:-1], est_starts[1:])
        self.assertTrue(np.all(est_ends > est_starts))
        self.assertGreaterEqual(est_starts[0], 0.0)

    def test_invalid_mid_times(self):
        with self.assertRaises(ValueError):
            estimate_frame_bounds_from_mid_times(np.array([1.0]))
        with self.assertRaises(ValueError):
            estimate_frame_bounds_from_mid_times(np.array([1.0, 1.0, 2.0]))


if __name__ == '__main__':
    unittest.main()
