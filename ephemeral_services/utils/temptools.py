import pathlib as pl

from _pytest.tmpdir import TempPathFactory


class PytestTempDirs:
    """Pytest temporary directory of the current worker.

    The class is initialized by the pytest plugin, where we have access to the
    `tmp_path_factory` fixture. It is used for files shared by the whole session of a worker,
    like `framework.log`.
    """

    pytest_worker_tmp: pl.Path | None = None

    @classmethod
    def init(cls, tmp_path_factory: TempPathFactory) -> None:
        cls.pytest_worker_tmp = pl.Path(tmp_path_factory.getbasetemp())


def get_pytest_worker_tmp() -> pl.Path:
    """Return Pytest temporary directory for the current worker.

    When running pytest with multiple workers, each worker has its own base temporary
    directory inside the "root" temporary directory.
    """
    if PytestTempDirs.pytest_worker_tmp is None:
        msg = "PytestTempDirs are not initialized"
        raise RuntimeError(msg)
    return PytestTempDirs.pytest_worker_tmp
