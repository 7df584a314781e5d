from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="bigquery-slotwatch",
    version="0.1.0",
    description="Observe running BigQuery jobs and break down slot reservation usage by project and user",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=["tests"]),
    package_data={"slotwatch": ["py.typed"]},
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3",
        "Topic :: Database",
        "Topic :: System :: Monitoring",
    ],
    install_requires=[
        "google-api-core >= 2.0",
        "google-cloud-bigquery >= 3.0",
        "google-cloud-error-reporting >= 1.0",
        "google-cloud-logging >= 3.0",
        "pandas >= 1.3, < 3",
    ],
    extras_require={"test": ["pytest"]},
    keywords="bigquery slots reservations monitoring treemap",
    entry_points={"console_scripts": ["slotwatch = slotwatch.__main__:main"]},
)
