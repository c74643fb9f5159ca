"""Package configuration."""

from setuptools import find_namespace_packages, setup

# The below list is only for CI
# For prod add the libs to the spicerack virtualenv of the cumin hosts
install_requires = [
    'cumin',
    'PyYAML',
    'requests',
    'wikimedia-spicerack',
    'wmflib',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'bandit>=1.5.0',
        'flake8>=3.2.1',
        'mypy>=0.670',
        'pytest>=6.1.0',
        'types-PyYAML',
        'types-requests',
        'types-setuptools',
    ],
    'prospector': [
        'prospector[with_everything]>=0.12.4,<1.12.0',
        'pytest>=6.1.0',
    ],
}

setup_requires = [
    'setuptools_scm>=1.15.0',
]

setup(
    author='Streaming Platform',
    author_email='streaming-platform@example.org',
    description='Spicerack cookbooks to operate Confluent Platform Kafka clusters',
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['kafka', 'confluent', 'automation', 'orchestration', 'cookbooks'],
    license='GPLv3+',
    name='confluent-kafka-cookbooks',
    packages=find_namespace_packages(include=['cookbooks', 'cookbooks.*'], exclude=['*.tests', '*.tests.*']),
    platforms=['GNU/Linux'],
    setup_requires=setup_requires,
    use_scm_version={'fallback_version': '0.1.0'},
    url='https://github.com/streaming-platform/confluent-kafka-cookbooks',
    zip_safe=False,
)
