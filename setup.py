from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()
readme = (here / "README.md").read_text(encoding="utf-8") if (here / "README.md").exists() else "HexSeg: probabilistic cell segmentation of spatial transcriptomics data."

setup(
	name="hexseg",
	version="0.1.0",
	description="MCMC cell segmentation of spatial transcript detections with a hexagonally chunked parallel sampler",
	long_description=readme,
	long_description_content_type="text/markdown",
	author="HexSeg Contributors",
	license="MIT",
	packages=find_packages(exclude=["tests", "tests.*"]),
	python_requires=">=3.9",
	install_requires=[
		"numpy>=1.23",
		"pandas>=1.5",
		"scipy>=1.10",
		"scikit-learn>=1.2",
		"shapely>=2.0",
		"geojson>=3.0",
		"joblib>=1.3",
		"click>=8",
		"rich>=13",
		"pyyaml>=6",
	],
	extras_require={
		"test": [
			"pytest>=7",
		],
	},
	entry_points={
		"console_scripts": [
			"hexseg=hexseg.cli:main",
		]
	},
	classifiers=[
		"License :: OSI Approved :: MIT License",
		"Programming Language :: Python :: 3",
		"Programming Language :: Python :: 3 :: Only",
		"Programming Language :: Python :: 3.9",
		"Programming Language :: Python :: 3.10",
		"Programming Language :: Python :: 3.11",
		"Intended Audience :: Science/Research",
		"Topic :: Scientific/Engineering :: Bio-Informatics",
	],
)
