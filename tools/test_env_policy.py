"""Self-test for environment filtering.

Run:
  python tools/test_env_policy.py
"""

from __future__ import annotations

from agent_guard.backend.env_policy import EnvPolicy, build_env, filter_env


def test_exact_allow_list() -> None:
    env = {"PATH": "/usr/bin", "HOME": "/home/u", "AWS_SECRET_ACCESS_KEY": "x", "PATHEXT": ".EXE"}
    env.update({f"NOISE_{i}": str(i) for i in range(100)})
    out = build_env(["PATH", "HOME"], env)
    assert out == {"PATH": "/usr/bin", "HOME": "/home/u"}


def test_missing_keys_are_omitted() -> None:
    out = build_env(["PATH", "HOME", "LANG"], {"PATH": "/bin"})
    assert out == {"PATH": "/bin"}
    assert "HOME" not in out


def test_no_wildcards() -> None:
    out = build_env(["LC_*"], {"LC_ALL": "C", "LC_*": "literal"})
    assert out == {"LC_*": "literal"}


def test_source_untouched() -> None:
    env = {"PATH": "/bin", "X": "1"}
    out = filter_env(EnvPolicy(["PATH"]), env)
    out["PATH"] = "changed"
    assert env == {"PATH": "/bin", "X": "1"}


def main() -> None:
    test_exact_allow_list()
    test_missing_keys_are_omitted()
    test_no_wildcards()
    test_source_untouched()
    print("OK: env policy")


if __name__ == "__main__":
    main()
