from setuptools import setup, find_packages

setup(name='petkfit', version='0.1.0', packages=find_packages(exclude=['tests', 'tests.*']),
      python_requires='>=3.9',
      install_requires=['numpy', 'scipy', 'numba', 'pandas', 'nibabel'],
      extras_require={'test': ['pytest']},
      entry_points={'console_scripts': ['petkfit-liver = petkfit.cli.cli_liver_fitting:main'], }, )
