"""
Image Processing Pipeline

Leased queue entry -> JobExecutor -> strategy:
1. fast-resample - Pillow resize and re-encode
2. ai-enhance - Real-ESRGAN super-resolution subprocess
"""
