"""
Execution Engine Module

Parent order execution on top of the market analysis components:
- Scheduled TWAP / VWAP / adaptive slicing with price and emergency controls
- Iceberg execution with concurrent children and anti-detection sizing
- Rule-based strategy routing with slippage feedback
- Order gateway boundary with a paper implementation
"""

from .gateway import OrderGateway, FillReport, PaperGateway
from .scheduled_slicer import ScheduledSlicer, ScheduledSlicerConfig, ExecutionTask, TaskStatus, AlgoType
from .iceberg_slicer import (
    IcebergSlicer, IcebergConfig, IcebergOrder, IcebergStatus, SplitStrategy, DisplayMode
)
from .router import ExecutionRouter, RouterConfig, ExecutionOrder, ExecutionStrategy, MarketAnalysis

__all__ = [
    'OrderGateway',
    'FillReport',
    'PaperGateway',
    'ScheduledSlicer',
    'ScheduledSlicerConfig',
    'ExecutionTask',
    'TaskStatus',
    'AlgoType',
    'IcebergSlicer',
    'IcebergConfig',
    'IcebergOrder',
    'IcebergStatus',
    'SplitStrategy',
    'DisplayMode',
    'ExecutionRouter',
    'RouterConfig',
    'ExecutionOrder',
    'ExecutionStrategy',
    'MarketAnalysis'
]
