import setuptools

setuptools.setup(
    name='ahmc',
    version='0.1.0',
    author='Matt Graham',
    description=(
        'Hamiltonian Monte Carlo with adaptive step size and preconditioner '
        'warm up'
    ),
    long_description=(
        'ahmc is a Python package providing an adaptive Hamiltonian Monte '
        'Carlo engine for approximate inference in probabilistic models: '
        'leapfrog integration with divergence handling, Metropolis '
        'acceptance, dual averaging step size adaptation and windowed '
        'estimation of a diagonal or dense preconditioner, with resumable '
        'chain states.'
    ),
    package_dir={'': 'src'},
    packages=['ahmc'],
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Topic :: Scientific/Engineering',
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers'
    ],
    keywords='inference sampling MCMC HMC',
    license='MIT',
    install_requires=['numpy>=1.22', 'scipy>=1.1'],
    python_requires='>=3.10',
    extras_require={
        'parallel': ['multiprocess>=0.70'],
        'test': ['pytest>=7'],
    }
)
