"""
Start Provider Orchestrator Service
"""
import os
import sys
from pathlib import Path

# Add backend to path
backend_root = Path(__file__).parent.parent
sys.path.insert(0, str(backend_root))

# Load environment variables
from dotenv import load_dotenv
env_path = backend_root / ".env"
load_dotenv(dotenv_path=env_path)

from provider_orchestrator.config import PROVIDERS, load_config

config = load_config()

# Print status
print("=" * 50)
print("🔀 Starting Provider Orchestrator Service")
print("=" * 50)
for name, desc in PROVIDERS.items():
    if desc.api_key_env is None:
        status = "no key needed"
    else:
        status = "SET" if os.getenv(desc.api_key_env) else "NOT SET"
    role = " (fallback)" if desc.is_fallback else ""
    print(f"  {name:<14} {desc.api_key_env or '-':<22} {status}{role}")
print("=" * 50)
print("📋 Dispatch:")
print(f"  - fan-out up to {config.max_fanout} providers, {config.call_timeout_s:.0f}s per call")
print(f"  - breaker opens after {config.cb_failure_threshold} failures, "
      f"cooldown {config.cb_cooldown_s:.0f}s")
print(f"  - decision loop every {config.liveness_interval_s:.0f}s "
      f"({'LLM reasoner' if config.use_llm_reasoner else 'rule table'})")
print("=" * 50)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "provider_orchestrator.main:app",
        host="0.0.0.0",
        port=8012,
        reload=True
    )
