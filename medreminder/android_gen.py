# medreminder/android_gen.py
# Java receivers + manifest snippet for the Buildozer build (python main.py --gen-android).
from pathlib import Path

from .config import DATA_DIR_NAME, JAVA_PACKAGE

JAVA_ALARM_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.app.Notification;
import android.app.NotificationChannel;
import android.app.NotificationManager;
import android.app.PendingIntent;
import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;
import android.os.Build;

import java.io.File;
import java.io.FileWriter;

public class AlarmReceiver extends BroadcastReceiver {{
    private static final String EXTRA_ID = "notification_id";

    private static int importanceFor(String channel) {{
        if ("out-of-stock".equals(channel)) return NotificationManager.IMPORTANCE_MAX;
        if ("low-stock-alerts".equals(channel)) return NotificationManager.IMPORTANCE_DEFAULT;
        return NotificationManager.IMPORTANCE_HIGH;
    }}

    private static void recordDelivered(Context context, String id) {{
        try {{
            File dir = new File(context.getFilesDir(), "{DATA_DIR_NAME}");
            dir.mkdirs();
            FileWriter w = new FileWriter(new File(dir, "delivered.log"), true);
            w.write(id + "\t" + System.currentTimeMillis() + "\n");
            w.close();
        }} catch (Exception ignored) {{
        }}
    }}

    @Override
    public void onReceive(Context context, Intent intent) {{
        String id = intent.getStringExtra(EXTRA_ID);
        String title = intent.getStringExtra("title");
        String body = intent.getStringExtra("body");
        String channel = intent.getStringExtra("channel");
        if (title == null) title = "Medicine Reminder";
        if (body == null) body = "Time to take your medicine";
        if (channel == null) channel = "medication-reminders";

        NotificationManager nm =
                (NotificationManager) context.getSystemService(Context.NOTIFICATION_SERVICE);

        if (Build.VERSION.SDK_INT >= 26) {{
            NotificationChannel ch = new NotificationChannel(channel, "Medication Reminders", importanceFor(channel));
            ch.setDescription("Reminders to take your medications on time");
            nm.createNotificationChannel(ch);
        }}

        Notification.Builder b = (Build.VERSION.SDK_INT >= 26)
                ? new Notification.Builder(context, channel)
                : new Notification.Builder(context);

        b.setContentTitle(title)
         .setContentText(body)
         .setSmallIcon(context.getApplicationInfo().icon)
         .setAutoCancel(true);

        int nid = (id != null) ? (id.hashCode() & 0x7fffffff) : (int)(System.currentTimeMillis() & 0x7fffffff);

        Intent launch = context.getPackageManager().getLaunchIntentForPackage(context.getPackageName());
        if (launch != null && id != null) {{
            launch.putExtra(EXTRA_ID, id);
            int flags = PendingIntent.FLAG_UPDATE_CURRENT;
            if (Build.VERSION.SDK_INT >= 23) flags |= PendingIntent.FLAG_IMMUTABLE;
            b.setContentIntent(PendingIntent.getActivity(context, nid, launch, flags));
        }}

        nm.notify(nid, b.build());
        if (id != null) recordDelivered(context, id);
    }}
}}
"""

JAVA_BOOT_RECEIVER_SRC = r"""
package {JAVA_PACKAGE};

import android.content.BroadcastReceiver;
import android.content.Context;
import android.content.Intent;

public class BootReceiver extends BroadcastReceiver {{
    @Override
    public void onReceive(Context context, Intent intent) {{
        // Reboot drops every alarm; launch the app so Python re-runs reconciliation.
        Intent launch = context.getPackageManager().getLaunchIntentForPackage(context.getPackageName());
        if (launch != null) {{
            launch.addFlags(Intent.FLAG_ACTIVITY_NEW_TASK);
            context.startActivity(launch);
        }}
    }}
}}
"""

EXTRA_MANIFEST_XML = r"""<manifest xmlns:android="http://schemas.android.com/apk/res/android">
    <uses-permission android:name="android.permission.RECEIVE_BOOT_COMPLETED"/>
    <uses-permission android:name="android.permission.SCHEDULE_EXACT_ALARM"/>
    <uses-permission android:name="android.permission.POST_NOTIFICATIONS"/>
    <uses-permission android:name="android.permission.WAKE_LOCK"/>
    <uses-permission android:name="android.permission.VIBRATE"/>
    <uses-permission android:name="android.permission.INTERNET"/>
    <uses-permission android:name="android.permission.ACCESS_NETWORK_STATE"/>

    <application>
        <receiver
            android:name="{JAVA_PACKAGE}.AlarmReceiver"
            android:exported="false" />

        <receiver
            android:name="{JAVA_PACKAGE}.BootReceiver"
            android:exported="false">
            <intent-filter>
                <action android:name="android.intent.action.BOOT_COMPLETED"/>
            </intent-filter>
        </receiver>
    </application>
</manifest>
"""


def write_android_sources(out_dir: Path) -> Path:
    pkg_path = Path(*JAVA_PACKAGE.split("."))
    src_root = Path(out_dir) / "android_src"
    java_dir = src_root / pkg_path
    java_dir.mkdir(parents=True, exist_ok=True)

    fmt = {"JAVA_PACKAGE": JAVA_PACKAGE, "DATA_DIR_NAME": DATA_DIR_NAME}
    (java_dir / "AlarmReceiver.java").write_text(JAVA_ALARM_RECEIVER_SRC.format(**fmt), encoding="utf-8")
    (java_dir / "BootReceiver.java").write_text(JAVA_BOOT_RECEIVER_SRC.format(**fmt), encoding="utf-8")
    (src_root / "extra_manifest.xml").write_text(EXTRA_MANIFEST_XML.format(**fmt), encoding="utf-8")
    return src_root
