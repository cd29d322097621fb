"""
console-vpn-agent
Batocera / Knulli 콘솔에 Tailscale 클라이언트를 설치하고 업데이트하는 에이전트

Features:
- 아키텍처별 최신 릴리스 다운로드 (재시도, TS_INSECURE 옵트인)
- gzip 검증 및 busybox 호환 압축 해제
- 백업 후 원자적 바이너리 교체, state 디렉토리 보존
- batocera-services 스크립트 생성
- TS_AUTHKEY 기반 비대화형 bring-up
"""

__version__ = "1.0.0"
__author__ = "DevOps Team"
