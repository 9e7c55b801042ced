import threading

from svcorch.MANAGERS.log_aggregator import LogAggregator


def test_read_tail(tmp_path):
    (tmp_path / "db.log").write_text("".join(f"line {i}\n" for i in range(100)))
    aggregator = LogAggregator(str(tmp_path))
    assert aggregator.read_tail("db", 3) == ["line 97", "line 98", "line 99"]
    assert aggregator.read_tail("web") == []


def test_follow_emits_new_lines(tmp_path):
    log = tmp_path / "db.log"
    log.write_text("old\n")
    aggregator = LogAggregator(str(tmp_path))
    seen = []
    done = threading.Event()

    def emit(name, line):
        seen.append((name, line))
        if len(seen) == 2:
            done.set()

    thread = threading.Thread(
        target=aggregator.follow,
        args=(["db"], emit),
        kwargs={"stop": done.is_set, "poll_interval": 0.01},
    )
    thread.start()
    # Give follow a moment to open the file at its end
    threading.Event().wait(0.2)
    with open(log, "a") as f:
        f.write("new 1\nnew 2\n")
    assert done.wait(5)
    thread.join(5)
    assert seen == [("db", "new 1"), ("db", "new 2")]
