"""
Ground-truth measurements of images: what is actually in the pixels.
"""
from .image_analyzer import DominantColor, ImageAnalysis, analyze, format_analysis_summary
