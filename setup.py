from setuptools import setup

setup(
    name="jobs-done",
    version="0.3.0",
    description="Command to list the SLURM jobs that finished since the last check.",
    url="https://github.com/chem-william/slurm_jd",
    author="jobs-done contributors",
    license="MIT",
    python_requires=">=3.10",
    install_requires=["typer>=0.9", "pydantic>=2.0", "rich>=13.0", "polars>=1.0", "pyyaml>=6.0"],
    extras_require={"test": ["pytest"]},
    py_modules=["jobs_done"],
    entry_points={"console_scripts": ["jobs_done=jobs_done:app", "jobs-done=jobs_done:app"]},
)
