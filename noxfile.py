import nox

nox.options.default_venv_backend = "uv"


@nox.session
def pre_commit(session: nox.Session):
    """Run pre-commit hooks."""
    session.run("uv", "run", "--frozen", "pre-commit", "run", "--all-files")


@nox.session
@nox.parametrize("python", ["3.11", "3.12", "3.13"])
def tests(session: nox.Session):
    """Run the test suite against the in-memory cluster."""
    session.run(
        "uv",
        "run",
        "--python",
        session.bin + "/python",
        "--active",
        "--extra",
        "test",
        "pytest",
        *session.posargs,
    )
