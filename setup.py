"""Setup script for latentforge; ensures package discovery works with setuptools."""
from setuptools import setup, find_packages

setup(
    name="latentforge",
    version="0.1.0",
    description="Latent diffusion orchestration: schedulers, prompt encoding, stage lifecycle and diffuser strategies",
    python_requires=">=3.11",
    # Explicit package discovery for reliable build (editable and wheel)
    packages=find_packages(where=".", include=("latentforge", "latentforge.*")),
    package_dir={"": "."},
    install_requires=[
        "torch>=2.1",
        "numpy>=1.24",
        "omegaconf>=2.3",
        "tqdm>=4.65",
        "diffusers>=0.30",
        "transformers>=4.40",
        "sentencepiece>=0.1.99",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
)
