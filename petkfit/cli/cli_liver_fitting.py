r"""
Command-line interface (CLI) for fitting the dual-input liver model to PET data.

This module provides the ``petkfit-liver`` command with two sub-commands:
    * ``voxel``: fits every voxel of a 4D-PET image, optionally restricted to a mask, and saves parametric images.
      Uses :class:`LiverParametricImage<petkfit.kinetic_modeling.parametric_images.LiverParametricImage>`.
    * ``region``: fits every region of a regional TACs table and saves the fitted parameters as a TSV file. Uses
      :class:`LiverRegionalAnalysis<petkfit.kinetic_modeling.regional_fitting.LiverRegionalAnalysis>`.

The model parameters are, in order: vb, k1, k2, k3, k4, ka, fa. Any of them can be held at its initial value with
``--fixed-params``.

Example:
    .. code-block:: bash

        petkfit-liver voxel -p sub-001_pet.nii.gz -b sub-001_blood.tsv -m sub-001_liver_mask.nii.gz \
        -o ./fits -f sub-001 --fixed-params k4 --max-iterations 200 -v

        petkfit-liver region -r sub-001_tacs.tsv -b sub-001_blood.tsv -o ./fits -f sub-001 \
        --half-life 109.77 --weighting duration

"""
import argparse
import logging
from ..kinetic_modeling.kinetic_models import DualInputLiverModel
from ..kinetic_modeling.levenberg_marquardt import LevenbergMarquardtSettings
from ..kinetic_modeling.parametric_images import LiverParametricImage
from ..kinetic_modeling.regional_fitting import LiverRegionalAnalysis
from ..utils.image_io import decay_constant_from_half_life

logger = logging.getLogger(__name__)

_EXAMPLE_ = ('Fitting every voxel of a liver mask, holding k4 fixed:\n\t'
             'petkfit-liver voxel -p sub-001_pet.nii.gz -b sub-001_blood.tsv -m sub-001_liver_mask.nii.gz '
             '-o ./fits -f sub-001 --fixed-params k4 -v\n'
             'Fitting regional TACs with F18 decay and duration weighting:\n\t'
             'petkfit-liver region -r sub-001_tacs.tsv -b sub-001_blood.tsv -o ./fits -f sub-001 '
             '--half-life 109.77 --weighting duration')


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """
    Adds the arguments shared by every sub-command to ``parser``.

    Args:
        parser (argparse.ArgumentParser): The sub-command parser to which the arguments are added.
    """
    param_names = ', '.join(DualInputLiverModel.param_names)

    grp_io = parser.add_argument_group('IO Paths and Prefixes')
    grp_io.add_argument('-b', '--blood-tsv-path', required=True,
                        help='Path to the blood input TSV file (time, plasma, whole-blood columns).')
    grp_io.add_argument('-o', '--output-directory', required=True, help='Path to the output directory.')
    grp_io.add_argument('-f', '--output-filename-prefix', default='sub_XXXX', help='Prefix for the output filenames.')

    grp_analysis = parser.add_argument_group('Analysis Parameters')
    grp_analysis.add_argument('-g', '--initial-guesses', required=False, nargs=7, type=float, default=None,
                              help=f'Initial guesses for each fitting parameter ({param_names}).')
    grp_analysis.add_argument('-l', '--lower-bounds', required=False, nargs=7, type=float, default=None,
                              help='Lower bounds for each fitting parameter.')
    grp_analysis.add_argument('-u', '--upper-bounds', required=False, nargs=7, type=float, default=None,
                              help='Upper bounds for each fitting parameter.')
    grp_analysis.add_argument('-x', '--fixed-params', required=False, nargs='+', default=None,
                              choices=DualInputLiverModel.param_names,
                              help='Names of the parameters held at their initial value.')
    grp_analysis.add_argument('-n', '--max-iterations', required=False, default=100, type=int,
                              help='Maximum number of solver iterations per fit.')
    grp_analysis.add_argument('-t', '--time-step', required=False, default=None, type=float,
                              help='Step of the fine time grid in minutes. Defaults to a quarter of the '
                                   'shortest frame.')
    grp_analysis.add_argument('-w', '--weighting', required=False, default=None, choices=['duration'],
                              help='Frame weighting. Frames are equally weighted if not provided.')

    grp_decay = grp_analysis.add_mutually_exclusive_group()
    grp_decay.add_argument('--half-life', required=False, default=None, type=float,
                           help='Radionuclide half-life in minutes.')
    grp_decay.add_argument('--decay-constant', required=False, default=None, type=float,
                           help='Decay constant in 1/minutes. Use 0 for decay-corrected data.')

    grp_solver = parser.add_argument_group('Solver Options')
    grp_solver.add_argument('--initial-damping', required=False, default=1e-3, type=float,
                            help='Initial Levenberg-Marquardt damping factor.')
    grp_solver.add_argument('--ftol', required=False, default=1e-10, type=float,
                            help='Relative SSE improvement below which a fit has converged.')
    grp_solver.add_argument('--xtol', required=False, default=1e-10, type=float,
                            help='Relative step size below which a fit has converged.')

    grp_verbose = parser.add_argument_group('Additional Options')
    grp_verbose.add_argument('-v', '--verbose', action='store_true',
                             help='Print processing information during computation.')


def _generate_args() -> argparse.ArgumentParser:
    """
    Generates the argument parser for :func:`main`.

    Returns:
        argparse.ArgumentParser: The parser with the ``voxel`` and ``region`` sub-commands.
    """
    parser = argparse.ArgumentParser(prog='petkfit-liver',
                                     description='Command line interface for fitting the dual-input liver model to '
                                                 'PET images and TACs.',
                                     epilog=_EXAMPLE_, formatter_class=argparse.RawTextHelpFormatter)
    subparsers = parser.add_subparsers(dest='command', help='Sub-command help.')

    parser_voxel = subparsers.add_parser('voxel', help='Voxel-wise fit of a 4D PET image.')
    parser_voxel.add_argument('-p', '--pet4D-img-path', required=True, help='Path to the 4D PET image file.')
    parser_voxel.add_argument('-m', '--mask-img-path', required=False, default=None,
                              help='Path to a 3D mask. Every voxel is fit if not provided.')
    _add_common_args(parser_voxel)

    parser_region = subparsers.add_parser('region', help='Fit of every region of a regional TACs TSV file.')
    parser_region.add_argument('-r', '--regional-tacs-path', required=True,
                               help='Path to the regional TACs TSV file (frame mid-times, then one column per '
                                    'region).')
    _add_common_args(parser_region)

    return parser


def _decay_constant_from_args(args: argparse.Namespace):
    if args.decay_constant is not None:
        return args.decay_constant
    if args.half_life is not None:
        return decay_constant_from_half_life(args.half_life)
    return None


def main(argv=None):
    """
    Liver model fitting command line interface.

    Args:
        argv (list[str], optional): Arguments to parse instead of ``sys.argv[1:]``.
    """
    parser = _generate_args()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        raise SystemExit(1)

    logging.basicConfig(format='%(asctime)s %(name)s %(levelname)s: %(message)s')
    logging.getLogger('petkfit').setLevel(level=logging.INFO if args.verbose else logging.WARNING)

    settings = LevenbergMarquardtSettings(initial_damping=args.initial_damping, ftol=args.ftol, xtol=args.xtol)
    decay_constant = _decay_constant_from_args(args)
    run_kwargs = {'initial_params': args.initial_guesses,
                  'lower_bounds': args.lower_bounds,
                  'upper_bounds': args.upper_bounds,
                  'fixed_params': args.fixed_params,
                  'max_iters': args.max_iterations,
                  'td': args.time_step,
                  'weights': args.weighting,
                  'settings': settings}
    logger.info(f"Running {args.command} fit with parameters: {run_kwargs}")

    if args.command == 'voxel':
        analysis = LiverParametricImage(pet4D_img_path=args.pet4D_img_path,
                                        blood_tsv_path=args.blood_tsv_path,
                                        output_directory=args.output_directory,
                                        output_filename_prefix=args.output_filename_prefix,
                                        mask_img_path=args.mask_img_path)
        analysis(decay_constant=decay_constant, **run_kwargs)
    else:
        analysis = LiverRegionalAnalysis(regional_tacs_path=args.regional_tacs_path,
                                         blood_tsv_path=args.blood_tsv_path,
                                         output_directory=args.output_directory,
                                         output_filename_prefix=args.output_filename_prefix)
        analysis(decay_constant=0.0 if decay_constant is None else decay_constant, **run_kwargs)


if __name__ == "__main__":
    main()
