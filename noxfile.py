import nox

PYTHONS = ["3.11", "3.12", "3.13"]


@nox.session(python=PYTHONS)
def tests(session):
    session.install("-e", ".[dev]")
    session.run("pytest", *session.posargs)
