import setuptools

setuptools.setup(
    name='hamchain',
    version='0.1.0',
    description=(
        'Adaptive Hamiltonian Monte Carlo chains with variate transforms'
    ),
    long_description=(
        'Hamchain is a Python package providing an adaptive Hamiltonian Monte '
        'Carlo (HMC) chain iterator with a cycle based burn-in and tuning '
        'loop, together with a composable algebra of variate transforms '
        'tracking the log absolute determinant of the Jacobian of changes of '
        'variables.'
    ),
    package_dir={'': 'src'},
    packages=setuptools.find_packages('src'),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Topic :: Scientific/Engineering',
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers'
    ],
    keywords='inference sampling MCMC HMC NUTS transforms',
    license='MIT',
    install_requires=['numpy>=1.22', 'scipy>=1.8'],
    python_requires='>=3.10',
    extras_require={
        'autodiff': ['autograd>=1.3'],
        'test': ['pytest>=7'],
    }
)
