"""
Port Forward Manager 主程序入口

使用方式:
    python -m port_forward [start|stop|restart|status|reload|help|serve]
    或
    port-forward status
"""

from port_forward.cli import app


def main():
    """主程序入口"""
    app()


if __name__ == "__main__":
    main()
