"""Minimal demonstration: a few simulated agents chatting through one provider.

用法::

    OPENAI_API_KEY=sk-... python examples/agent_chat_demo.py
    python examples/agent_chat_demo.py examples/llm.conf
"""

import sys
from pathlib import Path

from dotenv import load_dotenv

from llm_core import get_default_service

HERE = Path(__file__).resolve().parent


def main() -> int:
    # 加载.env文件中的环境变量
    load_dotenv()
    service = get_default_service()
    if len(sys.argv) > 1:
        loaded = service.load_config(sys.argv[1])
        if not loaded["ok"]:
            print("Config error:", loaded["error"]["message"])
            return 1

    status = service.provider_status()["status"]
    print(service.config_summary()["summary"])
    if not status["ready"]:
        print("Provider not ready:", status["hint"])
        print(service.setup_help()["help"])
        return 1

    for agent in ("sheep-1", "wolf-1"):
        res = service.chat(agent, f"You are {agent}. In one sentence, what do you do this tick?")
        print(f"{agent}:", res["reply"] if res["ok"] else res["error"]["message"])

    pending = [service.chat_async(f"sheep-{i}", "Name your favourite grass in two words.") for i in range(2, 5)]
    for i, res in enumerate(pending, start=2):
        reply = res["handle"].force(timeout=60) if res["ok"] else res
        print(f"sheep-{i}:", reply["reply"] if reply["ok"] else reply["error"]["message"])

    decision = service.choose("wolf-1", "A sheep is nearby. What now?", ["chase", "wait", "retreat"])
    if decision["ok"]:
        print("wolf-1 decides:", decision["choice"], f"({decision['strategy']})")

    res = service.chat_with_template(
        "farmer-1",
        str(HERE / "templates" / "farmer.yaml"),
        {"weather": "rainy", "crop": "corn"},
    )
    print("farmer-1:", res["reply"] if res["ok"] else res["error"]["message"])
    print("wolf-1 history:", service.get_history("wolf-1")["history"])
    service.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
