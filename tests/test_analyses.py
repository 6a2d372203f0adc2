import json
import os
import tempfile
import unittest
import nibabel as nib
import numpy as np
import pandas as pd
from petkfit.cli import cli_liver_fitting
from petkfit.kinetic_modeling.kinetic_models import DualInputLiverModel
from petkfit.kinetic_modeling.parametric_images import (LiverParametricImage,
                                                        build_context_from_blood_file,
                                                        get_frame_weights)
from petkfit.kinetic_modeling.regional_fitting import LiverRegionalAnalysis
from synthetic_data import FRAME_DURATIONS, TRUE_LIVER_PARAMS, frame_bounds, plasma_curve, whole_blood_curve

F18_DECAY_CONSTANT = np.log(2.0) / (6588.0 / 60.0)


class AnalysisTestCase(unittest.TestCase):
    """Writes a blood TSV file and simulates noiseless liver TACs from it."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.out_dir = os.path.join(self.tmp_dir.name, 'out')
        self.blood_path = os.path.join(self.tmp_dir.name, 'sub-001_blood.tsv')
        sample_times = np.arange(0.0, 40.0, 0.05)
        pd.DataFrame({'time': sample_times,
                      'plasma': plasma_curve(sample_times),
                      'whole_blood': whole_blood_curve(sample_times)}).to_csv(self.blood_path, sep='\t', index=False)
        self.frame_starts, self.frame_ends = frame_bounds()
        self.model = DualInputLiverModel()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def simulate(self, params, decay_constant):
        context = build_context_from_blood_file(self.blood_path, self.frame_starts, self.frame_ends,
                                                decay_constant=decay_constant, td=None)
        return self.model.evaluate(np.asarray(params, dtype=float), context)


class TestFrameWeights(unittest.TestCase):
    def test_weights(self):
        durations = np.array([0.5, 1.0, 2.0])
        np.testing.assert_array_equal(get_frame_weights(None, durations), np.ones(3))
        np.testing.assert_array_equal(get_frame_weights('duration', durations), durations)
        np.testing.assert_array_equal(get_frame_weights([1, 2, 3], durations), [1.0, 2.0, 3.0])
        with self.assertRaises(ValueError):
            get_frame_weights('variance', durations)


class TestLiverParametricImage(AnalysisTestCase):
    def setUp(self):
        super().setUp()
        self.pet_path = os.path.join(self.tmp_dir.name, 'sub-001_pet.nii.gz')
        self.mask_path = os.path.join(self.tmp_dir.name, 'sub-001_mask.nii.gz')
        tac = self.simulate(TRUE_LIVER_PARAMS, F18_DECAY_CONSTANT)
        pet_data = np.zeros((2, 2, 1, tac.shape[0]), dtype=np.float32)
        for scale, idx in zip((1.0, 0.9, 1.1, 1.2), ((0, 0), (0, 1), (1, 0), (1, 1))):
            pet_data[idx[0], idx[1], 0] = scale * tac
        nib.save(nib.Nifti1Image(pet_data, np.eye(4)), self.pet_path)
        with open(self.pet_path.replace('.nii.gz', '.json'), 'w', encoding='utf-8') as meta_file:
            json.dump({'FrameDuration': (FRAME_DURATIONS * 60.0).tolist(), 'TracerRadionuclide': 'F18'}, meta_file)
        mask = np.ones((2, 2, 1), dtype=np.int16)
        mask[1, 1, 0] = 0
        nib.save(nib.Nifti1Image(mask, np.eye(4)), self.mask_path)

    def make_analysis(self, mask_img_path=None):
        return LiverParametricImage(pet4D_img_path=self.pet_path,
                                    blood_tsv_path=self.blood_path,
                                    output_directory=self.out_dir,
                                    output_filename_prefix='sub-001',
                                    mask_img_path=mask_img_path)

    def test_save_before_run(self):
        with self.assertRaises(RuntimeError):
            self.make_analysis().save_analysis()

    def test_masked_voxel_fit(self):
        analysis = self.make_analysis(mask_img_path=self.mask_path)
        analysis(fixed_params=['k4'], max_iters=3)

        self.assertAlmostEqual(analysis.analysis_props['DecayConstant'], F18_DECAY_CONSTANT)
        self.assertEqual(analysis.analysis_props['NumberOfVoxelsFit'], 3)
        self.assertEqual(analysis.analysis_props['FixedParameters'], ['k4'])
        self.assertEqual(sum(analysis.analysis_props['StatusCounts'].values()), 3)

        for par_id, par_name in enumerate(self.model.param_names):
            par_path = os.path.join(self.out_dir, f'sub-001_model-liver_desc-{par_name}.nii.gz')
            par_img = nib.load(par_path).get_fdata()
            self.assertEqual(par_img.shape, (2, 2, 1))
            self.assertEqual(par_img[1, 1, 0], 0.0)
            inside = par_img[:2, :, 0].ravel()[:3]
            self.assertTrue(np.all(inside >= self.model.default_lower[par_id] - 1e-6))
            self.assertTrue(np.all(inside <= self.model.default_upper[par_id] + 1e-6))

        status = nib.load(os.path.join(self.out_dir, 'sub-001_model-liver_desc-status.nii.gz')).get_fdata()
        self.assertEqual(status[1, 1, 0], 0)
        self.assertTrue(np.all(np.isin(status[analysis.status_image > 0], [1, 2, 3])))
        self.assertEqual(int(np.sum(status > 0)), 3)

        fit_img = nib.load(os.path.join(self.out_dir, 'sub-001_model-liver_desc-fit.nii.gz'))
        self.assertEqual(fit_img.shape, (2, 2, 1, FRAME_DURATIONS.shape[0]))

        with open(os.path.join(self.out_dir, 'sub-001_model-liver_desc-props.json'), 'r', encoding='utf-8') as props:
            saved_props = json.load(props)
        self.assertEqual(saved_props['ParameterNames'], list(self.model.param_names))
        self.assertEqual(saved_props['NumberOfFrames'], FRAME_DURATIONS.shape[0])

    def test_missing_half_life_warns_and_ignores_decay(self):
        with open(self.pet_path.replace('.nii.gz', '.json'), 'w', encoding='utf-8') as meta_file:
            json.dump({'FrameDuration': (FRAME_DURATIONS * 60.0).tolist()}, meta_file)
        analysis = self.make_analysis()
        with self.assertWarns(UserWarning):
            analysis.run_analysis(max_iters=0)
        self.assertEqual(analysis.analysis_props['DecayConstant'], 0.0)
        self.assertEqual(analysis.analysis_props['NumberOfVoxelsFit'], 4)

    def test_explicit_decay_constant_and_zero_iterations(self):
        analysis = self.make_analysis()
        analysis.run_analysis(decay_constant=F18_DECAY_CONSTANT, max_iters=0,
                              initial_params=TRUE_LIVER_PARAMS, weights='duration')
        np.testing.assert_allclose(analysis.fitted_image[0, 0, 0], self.simulate(TRUE_LIVER_PARAMS,
                                                                                 F18_DECAY_CONSTANT))
        np.testing.assert_allclose(analysis.parameter_images['k1'], TRUE_LIVER_PARAMS[1])


class TestLiverRegionalAnalysis(AnalysisTestCase):
    def setUp(self):
        super().setUp()
        self.tacs_path = os.path.join(self.tmp_dir.name, 'sub-001_tacs.tsv')
        self.truth = TRUE_LIVER_PARAMS * np.array([1.5, 0.8, 1.1, 0.6, 1.0, 1.2, 0.7])
        mids = (self.frame_starts + self.frame_ends) / 2.0
        pd.DataFrame({'time': mids,
                      'liver': self.simulate(TRUE_LIVER_PARAMS, 0.0),
                      'lesion': self.simulate(self.truth, 0.0)}).to_csv(self.tacs_path, sep='\t', index=False)

    def make_analysis(self, scan_times=None):
        return LiverRegionalAnalysis(regional_tacs_path=self.tacs_path,
                                     blood_tsv_path=self.blood_path,
                                     output_directory=self.out_dir,
                                     output_filename_prefix='sub-001',
                                     scan_times=scan_times)

    def test_save_before_run(self):
        with self.assertRaises(RuntimeError):
            self.make_analysis().save_analysis()

    def test_regional_fit_with_scan_times(self):
        analysis = self.make_analysis(scan_times=np.stack([self.frame_starts, self.frame_ends], axis=1))
        initial = TRUE_LIVER_PARAMS * np.array([0.9, 1.1, 0.9, 1.1, 1.0, 0.9, 1.1])
        analysis(initial_params=initial, fixed_params=['k4'], max_iters=300)

        params = pd.read_csv(os.path.join(self.out_dir, 'sub-001_model-liver_desc-params.tsv'), sep='\t')
        self.assertEqual(list(params['region']), ['liver', 'lesion'])
        self.assertEqual(list(params.columns[1:8]), list(self.model.param_names))
        np.testing.assert_allclose(params.loc[0, list(self.model.param_names)].to_numpy(dtype=float),
                                   TRUE_LIVER_PARAMS, rtol=1e-2)

        fitted = pd.read_csv(os.path.join(self.out_dir, 'sub-001_model-liver_desc-fit.tsv'), sep='\t')
        self.assertEqual(list(fitted.columns), ['frame_start', 'frame_end', 'liver', 'lesion'])
        self.assertTrue(os.path.exists(os.path.join(self.out_dir, 'sub-001_model-liver_desc-props.json')))
        self.assertEqual(set(analysis.analysis_props['FitStatus']), {'liver', 'lesion'})

    def test_frame_bounds_estimated_from_mid_times(self):
        analysis = self.make_analysis()
        analysis.run_analysis(max_iters=0)
        np.testing.assert_allclose(analysis.fitted_tacs['frame_start'], analysis.analysis_props['FrameStarts'])
        self.assertEqual(analysis.analysis_props['NumberOfFrames'], FRAME_DURATIONS.shape[0])

    def test_scan_times_shape_mismatch(self):
        with self.assertRaises(ValueError):
            self.make_analysis(scan_times=np.ones((3, 2))).run_analysis(max_iters=0)


class TestLiverFittingCLI(AnalysisTestCase):
    def test_region_command(self):
        tacs_path = os.path.join(self.tmp_dir.name, 'sub-001_tacs.tsv')
        mids = (self.frame_starts + self.frame_ends) / 2.0
        pd.DataFrame({'time': mids, 'liver': self.simulate(TRUE_LIVER_PARAMS, F18_DECAY_CONSTANT)}).to_csv(
            tacs_path, sep='\t', index=False)
        cli_liver_fitting.main(['region', '-r', tacs_path, '-b', self.blood_path, '-o', self.out_dir,
                                '-f', 'cli', '--half-life', str(6588.0 / 60.0), '-x', 'k4', '-n', '5',
                                '--weighting', 'duration'])
        with open(os.path.join(self.out_dir, 'cli_model-liver_desc-props.json'), 'r', encoding='utf-8') as props:
            saved_props = json.load(props)
        self.assertAlmostEqual(saved_props['DecayConstant'], F18_DECAY_CONSTANT)
        self.assertEqual(saved_props['FixedParameters'], ['k4'])
        self.assertEqual(saved_props['MaxIterations'], 5)

    def test_missing_command(self):
        with self.assertRaises(SystemExit):
            cli_liver_fitting.main([])

    def test_unknown_fixed_parameter(self):
        with self.assertRaises(SystemExit):
            cli_liver_fitting.main(['region', '-r', 'tacs.tsv', '-b', self.blood_path, '-o', self.out_dir,
                                    '-x', 'k9'])


if __name__ == '__main__':
    unittest.main()
