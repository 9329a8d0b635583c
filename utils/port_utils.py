# utils/port_utils.py
import socket
import psutil
import logging
from typing import Optional, Dict, Tuple

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """Проверяет, занят ли порт на указанном адресе"""
    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True


def get_process_using_port(port: int) -> Optional[Dict]:
    """Возвращает информацию о процессе, слушающем порт"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            if not conn.laddr or conn.laddr.port != port or conn.status != psutil.CONN_LISTEN:
                continue
            if conn.pid is None:
                continue
            try:
                process = psutil.Process(conn.pid)
                return {
                    'name': process.name(),
                    'pid': process.pid,
                    'username': process.username(),
                }
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except (psutil.AccessDenied, OSError) as e:
        # На macOS/Linux без прав список соединений может быть недоступен
        logger.debug(f"Ошибка при поиске процесса на порту {port}: {e}")
    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> Tuple[bool, str]:
    """
    Проверяет доступность порта и возвращает информацию о проблеме

    Returns:
        tuple: (свободен ли порт, сообщение)
    """
    if not 0 < port < 65536:
        return False, f"Некорректный порт {port}"

    if not is_port_in_use(port, host):
        return True, "Порт свободен"

    process_info = get_process_using_port(port)
    if process_info:
        message = (
            f"Порт {port} занят процессом {process_info['name']} "
            f"(PID: {process_info['pid']})"
        )
        if process_info.get('username'):
            message += f", пользователь: {process_info['username']}"
        return False, message

    return False, f"Порт {port} на {host} занят"
