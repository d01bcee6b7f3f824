"""geonudge: 地理围栏生命周期与 "事件 -> 通知" 流水线"""

__version__ = "0.3.0"
