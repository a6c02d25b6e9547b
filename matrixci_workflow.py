# matrixci_workflow.py
# Workflow for checking matrixci itself: tests across interpreters, lint, packaging
from __future__ import annotations
from matrixci.dsl import job, matrix, on_pull_request, on_push, pipeline, sh, uses


def workflow():
    return pipeline(
        "matrixci",
        # Lint job - ruff, with the format check on one variant only
        job(
            "lint",
            uses("actions/checkout@v4"),
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests", if_="matrix.mode.check_formatting"),
            name="Lint (${{ matrix.mode.name }})",
            matrix=matrix(mode=[{"name": "full", "check_formatting": True}, {"name": "quick"}]),
        ),

        # Test job - one instance per interpreter
        job(
            "test",
            uses("actions/checkout@v4"),
            uses("actions/setup-python@v5", with_={"python-version": "${{ matrix.python }}"}),
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            name="Test on Python ${{ matrix.python }}",
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
        ),

        # Package job - build once every test instance passed
        job(
            "package",
            sh("Build sdist and wheel", "python -m pip wheel --no-deps -w dist ."),
            sh("Upload", "twine upload dist/*", if_="isSet(PYPI_TOKEN)",
               env={"TWINE_USERNAME": "__token__", "TWINE_PASSWORD": "${{ secrets.PYPI_TOKEN }}"}),
            needs=["test"],
        ),
        on=[on_push("main"), on_pull_request()],
        env={"PYTHONUNBUFFERED": "1"},
    )
