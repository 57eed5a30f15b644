# Version History
# v1.0 - Print a fresh VAPID key pair in .env format.

from __future__ import annotations

from vapid import generate_key_pair


def render_env(public: str, private: str) -> str:
    return f"VAPID_PUBLIC_KEY={public}\nVAPID_PRIVATE_KEY={private}\n"


def main() -> None:
    public, private = generate_key_pair()
    print("# Paste these into your .env file:")
    print(render_env(public, private), end="")


if __name__ == "__main__":
    main()
