"""Package configuration."""

from setuptools import find_namespace_packages, find_packages, setup

# The below list is only for CI
# For prod add the libs to the spicerack host profile
install_requires = [
    'pyyaml',
    'wikimedia-spicerack',
    'kubernetes',
    'cryptography>=42.0.0',
    'urllib3',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'pytest>=6.1.0',
        'pre-commit',
    ],
}

setup_requires = [
    'setuptools_scm>=1.15.0',
]

setup(
    author='Control plane operations team',
    description='Kubernetes control plane certificate renewal cookbooks',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['kubernetes', 'cluster-api', 'certificates', 'automation', 'cookbooks'],
    license='GPLv3+',
    name='certrenew-cookbooks',
    packages=(
        find_packages(exclude=['*.tests', '*.tests.*'])
        + find_namespace_packages(include=["cookbooks.*"])
    ),
    platforms=['GNU/Linux'],
    python_requires='>=3.9',
    setup_requires=setup_requires,
    use_scm_version={'fallback_version': '0.1.0'},
    zip_safe=False,
)
