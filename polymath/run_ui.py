"""
启动 Streamlit UI 的便捷脚本

使用方法:
    polymath-ui               # ✅ 推荐方式 (installed entry point)
    或
    streamlit run polymath/ui.py
"""

import os
import subprocess
import sys

from loguru import logger

from polymath.logging_config import setup_logging


def main():
    """主函数"""
    setup_logging(os.getenv("POLYMATH_LOG_LEVEL", "INFO"))
    ui_file = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ui.py")
    if not os.path.exists(ui_file):
        logger.error(f"❌ 找不到 {ui_file}")
        sys.exit(1)

    logger.info("🚀 Starting Polymath Web UI on http://localhost:8501")
    logger.info("💡 Without OPENAI_API_KEY the agents run in fallback mode")
    try:
        subprocess.call([sys.executable, "-m", "streamlit", "run", ui_file])
    except KeyboardInterrupt:
        logger.info("👋 已关闭 UI")


if __name__ == "__main__":
    main()
