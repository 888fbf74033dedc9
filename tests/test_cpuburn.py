import pytest
from typer.testing import CliRunner

from winpatch import cpuburn
from winpatch.cpuburn import burn

runner = CliRunner(env={"NO_COLOR": "1"})


def fake_clock(*ticks: float):
    """
    Clock returning the given readings, in order.
    """
    readings = iter(ticks)
    return lambda: next(readings)


class TestBurn:
    def test_reports_every_interval(self):
        """
        Ensure throughput is reported once per elapsed interval.
        """
        reports = []

        total = burn(
            duration=5,
            interval=2,
            report=lambda *args: reports.append(args),
            clock=fake_clock(0, 1, 2, 3, 4, 5),
            batch=10,
        )

        assert total == 50
        assert reports == [(0, 2, 10.0), (0, 4, 10.0)]

    def test_stops_after_duration(self):
        total = burn(duration=0, interval=1, clock=fake_clock(0, 0), batch=5)

        assert total == 5

    def test_worker_index_in_reports(self):
        reports = []

        burn(
            duration=1,
            interval=1,
            report=lambda *args: reports.append(args),
            clock=fake_clock(0, 1),
            worker=3,
            batch=10,
        )

        assert reports == [(3, 1, 10.0)]

    @pytest.mark.parametrize("interval", [0, -1.0], ids=["zero", "negative"])
    def test_rejects_non_positive_interval(self, interval):
        """
        A stalled clock with no interval would divide by zero.
        """
        with pytest.raises(ValueError, match="must be positive"):
            burn(duration=1, interval=interval, clock=fake_clock(0, 0, 0))

    def test_real_clock(self):
        """
        A zero duration run with the real clock ends after one batch.
        """
        assert burn(duration=0, batch=100) == 100


class TestCpuburnCommand:
    def test_single_worker(self, mocker):
        mock_worker = mocker.patch.object(cpuburn, "run_worker", return_value=1000)

        result = runner.invoke(cpuburn.app, ["--duration", "1", "--interval", "0.5"])

        assert result.exit_code == 0
        mock_worker.assert_called_once_with(0, 1.0, 0.5)
        assert "Done:" in result.output
        assert "1,000 square roots" in result.output

    def test_multiple_workers(self, mocker):
        mock_pool = mocker.patch.object(cpuburn, "ProcessPoolExecutor")
        pool = mock_pool.return_value.__enter__.return_value
        pool.submit.return_value.result.return_value = 500

        result = runner.invoke(cpuburn.app, ["-d", "2", "-w", "3"])

        assert result.exit_code == 0
        mock_pool.assert_called_once_with(max_workers=3)
        assert pool.submit.call_count == 3
        pool.submit.assert_any_call(cpuburn.run_worker, 2, 2.0, 5.0)
        assert "1,500 square roots" in result.output

    def test_rejects_zero_workers(self):
        result = runner.invoke(cpuburn.app, ["--workers", "0"])

        assert result.exit_code != 0

    def test_print_report(self, mocker):
        mock_console = mocker.patch.object(cpuburn, "console")

        cpuburn.print_report(1, 5.0, 123456.0)

        printed = mock_console.print.call_args.args[0]
        assert "worker 1" in printed
        assert "123,456 sqrt/s" in printed
